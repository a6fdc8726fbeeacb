"""
Streaming stage primitives shared by the artifact builder and restore path.

A stage turns one chunk into zero or more output bytes and may hold state
between chunks; flush() drains whatever is buffered once the input ends.
"""

import hashlib


class Stage:
    """Base class for a streaming transform."""

    name = 'stage'

    def transform(self, chunk: bytes) -> bytes:
        raise NotImplementedError

    def flush(self) -> bytes:
        return b''


class DigestStage(Stage):
    """
    Pass-through stage that hashes every byte it sees.

    Placed last in the chain so the digest covers exactly the bytes that
    end up in storage.
    """

    name = 'digest'
    algorithm = 'sha256'

    def __init__(self):
        self._hash = hashlib.new(self.algorithm)
        self.size = 0

    def transform(self, chunk: bytes) -> bytes:
        self._hash.update(chunk)
        self.size += len(chunk)
        return chunk

    @property
    def digest(self) -> str:
        return format_digest(self._hash.hexdigest(), self.algorithm)


def format_digest(hexdigest: str, algorithm: str = 'sha256') -> str:
    return f"{algorithm}:{hexdigest}"


def run_chain(stages, chunk: bytes, start: int = 0) -> bytes:
    """Feed a chunk through stages[start:] in order."""
    for stage in stages[start:]:
        if not chunk:
            break
        chunk = stage.transform(chunk)
    return chunk


def flush_chain(stages) -> bytes:
    """
    Flush every stage in order, pushing each stage's tail through the
    stages that follow it.
    """
    output = []
    for index, stage in enumerate(stages):
        tail = stage.flush()
        if tail:
            output.append(run_chain(stages, tail, index + 1))
    return b''.join(output)
