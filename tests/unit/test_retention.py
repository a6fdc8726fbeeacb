"""
Unit tests for retention planning (dumpkeeper/backup/retention.py).

plan() is pure, so these tests build snapshots by hand.
"""

from datetime import datetime, timedelta, timezone

import pytest

from dumpkeeper.backup.errors import RetentionPolicyError
from dumpkeeper.backup.manifest import ArtifactSnapshot
from dumpkeeper.backup.retention import RetentionPolicy, RetentionTier, plan


NOW = datetime(2024, 3, 1, 3, 0, 0)


def daily_snapshot(days, state='verified', hour=2):
    """One artifact per day for the last `days` days, newest first."""
    return [
        ArtifactSnapshot(
            f'orders-{i:02d}',
            datetime(2024, 3, 1, hour) - timedelta(days=i),
            state
        )
        for i in range(days)
    ]


def policy(**data):
    return RetentionPolicy.from_dict(data)


class TestRetentionPlan:
    """Test plan() decisions."""

    def test_forty_daily_artifacts_keep_seven(self):
        """40 daily artifacts with daily=7: the 7 newest stay, 33 expire oldest first."""
        snapshot = daily_snapshot(40)

        result = plan(snapshot, policy(tiers=[{'period': 'daily', 'keep': 7}]), NOW)

        assert result.keep == frozenset(f'orders-{i:02d}' for i in range(7))
        assert result.expire == tuple(f'orders-{i:02d}' for i in range(39, 6, -1))
        assert len(result.expire) == 33

    def test_expire_is_oldest_first(self):
        snapshot = daily_snapshot(10)

        result = plan(snapshot, policy(tiers=[{'period': 'daily', 'keep': 2}]), NOW)

        created = {a.artifact_id: a.created_at for a in snapshot}
        expired_times = [created[artifact_id] for artifact_id in result.expire]
        assert expired_times == sorted(expired_times)

    def test_newest_is_never_expired(self):
        """Even a policy that keeps nothing keeps the newest artifact."""
        snapshot = daily_snapshot(5)

        result = plan(snapshot, policy(), NOW)

        assert result.keep == frozenset({'orders-00'})
        assert 'orders-00' not in result.expire
        assert result.reasons['orders-00'] == ('newest',)

    def test_newest_survives_max_age(self):
        snapshot = [
            ArtifactSnapshot('old-1', NOW - timedelta(days=30), 'verified'),
            ArtifactSnapshot('old-2', NOW - timedelta(days=20), 'verified'),
        ]

        result = plan(snapshot, policy(max_age_days=1, tiers=[{'period': 'daily', 'keep': 10}]), NOW)

        assert result.keep == frozenset({'old-2'})
        assert result.expire == ('old-1',)

    def test_equal_timestamps_lower_id_expires_first(self):
        created = NOW - timedelta(hours=5)
        snapshot = [
            ArtifactSnapshot('orders-b', created, 'verified'),
            ArtifactSnapshot('orders-c', created, 'verified'),
            ArtifactSnapshot('orders-a', created, 'verified'),
        ]

        result = plan(snapshot, policy(tiers=[{'period': 'daily', 'keep': 1}]), NOW)

        assert result.keep == frozenset({'orders-c'})
        assert result.expire == ('orders-a', 'orders-b')

    def test_window_keeps_everything_inside(self):
        snapshot = [
            ArtifactSnapshot(f'orders-{i:02d}', NOW - timedelta(days=i), 'verified')
            for i in range(20)
        ]

        result = plan(snapshot, policy(window_days=10), NOW)

        # Inclusive: an artifact exactly 10 days old is still inside the window
        assert result.keep == frozenset(f'orders-{i:02d}' for i in range(11))
        assert len(result.expire) == 9

    def test_min_age_protects_young_artifacts(self):
        snapshot = [
            ArtifactSnapshot(f'orders-{i:02d}', NOW - timedelta(days=i), 'verified')
            for i in range(5)
        ]

        result = plan(snapshot, policy(min_age_hours=48), NOW)

        assert result.keep == frozenset({'orders-00', 'orders-01'})
        assert 'min_age' in result.reasons['orders-01']

    def test_max_age_caps_tiers(self):
        snapshot = [
            ArtifactSnapshot(f'orders-{i:02d}', NOW - timedelta(days=i), 'verified')
            for i in range(30)
        ]

        result = plan(snapshot, policy(max_age_days=20, tiers=[{'period': 'daily', 'keep': 30}]), NOW)

        assert result.keep == frozenset(f'orders-{i:02d}' for i in range(21))
        assert result.expire == tuple(f'orders-{i:02d}' for i in range(29, 20, -1))

    def test_tier_keeps_newest_per_bucket(self):
        """Several artifacts per day: only the newest of each day counts for the tier."""
        snapshot = []
        for day in range(3):
            for hour in (1, 9, 17):
                created = datetime(2024, 2, 28, hour) - timedelta(days=day)
                snapshot.append(ArtifactSnapshot(f'orders-{day}-{hour:02d}', created, 'verified'))

        result = plan(snapshot, policy(tiers=[{'period': 'daily', 'keep': 2}]), NOW)

        assert result.keep == frozenset({'orders-0-17', 'orders-1-17'})
        assert len(result.expire) == 7

    def test_grandfather_father_son(self):
        """daily + weekly + monthly tiers over 90 days."""
        snapshot = daily_snapshot(90)

        result = plan(snapshot, policy(tiers=[
            {'period': 'daily', 'keep': 7},
            {'period': 'weekly', 'keep': 4},
            {'period': 'monthly', 'keep': 3},
        ]), NOW)

        # 7 daily, plus newest of older weeks and months not already kept
        for i in range(7):
            assert f'orders-{i:02d}' in result.keep
        assert len(result.keep) <= 7 + 4 + 3

        # Monthly keeps the newest of Feb (2024-02-29) and Jan (2024-01-31)
        assert 'orders-01' in result.keep  # 2024-02-29
        assert 'orders-30' in result.keep  # 2024-01-31
        assert 'monthly' in result.reasons['orders-30']

        assert set(result.keep).isdisjoint(result.expire)
        assert len(result.keep) + len(result.expire) == 90

    def test_only_stored_and_verified_are_candidates(self):
        snapshot = [
            ArtifactSnapshot('orders-pending', NOW - timedelta(minutes=1), 'pending'),
            ArtifactSnapshot('orders-orphaned', NOW - timedelta(days=1), 'orphaned'),
            ArtifactSnapshot('orders-expiring', NOW - timedelta(days=9), 'expiring'),
            ArtifactSnapshot('orders-stored', NOW - timedelta(days=2), 'stored'),
            ArtifactSnapshot('orders-verified', NOW - timedelta(days=3), 'verified'),
            ArtifactSnapshot('orders-verified-old', NOW - timedelta(days=4), 'verified'),
        ]

        result = plan(snapshot, policy(), NOW)

        # The pending artifact is newer, but only retainable states count
        assert result.keep == frozenset({'orders-stored', 'orders-verified'})
        assert result.expire == ('orders-verified-old',)

    def test_newest_verified_outlives_newer_stored(self):
        """A newer unconfirmed artifact must not push out the last verified one."""
        snapshot = [
            ArtifactSnapshot('orders-verified', NOW - timedelta(days=10), 'verified'),
            ArtifactSnapshot('orders-stored', NOW - timedelta(hours=1), 'stored'),
        ]

        result = plan(snapshot, policy(tiers=[{'period': 'daily', 'keep': 1}]), NOW)

        assert result.keep == frozenset({'orders-stored', 'orders-verified'})
        assert result.expire == ()
        assert result.reasons['orders-verified'] == ('newest_verified',)

    def test_newest_verified_survives_max_age(self):
        snapshot = [
            ArtifactSnapshot('orders-verified-old', NOW - timedelta(days=40), 'verified'),
            ArtifactSnapshot('orders-verified', NOW - timedelta(days=30), 'verified'),
            ArtifactSnapshot('orders-stored', NOW - timedelta(hours=1), 'stored'),
        ]

        result = plan(snapshot, policy(max_age_days=7), NOW)

        assert result.keep == frozenset({'orders-stored', 'orders-verified'})
        assert result.expire == ('orders-verified-old',)

    def test_min_age_window_and_daily_tier(self):
        """40 daily artifacts, min_age 1 day, window 30 days, daily keep 7."""
        snapshot = [
            ArtifactSnapshot(f'orders-{i:02d}', NOW - timedelta(days=i), 'verified')
            for i in range(40)
        ]
        retention = policy(min_age_hours=24, window_days=30, tiers=[{'period': 'daily', 'keep': 7}])

        result = plan(snapshot, retention, NOW)

        # The window boundary is inclusive: day 30 stays
        assert result.keep == frozenset(f'orders-{i:02d}' for i in range(31))
        assert result.expire == tuple(f'orders-{i:02d}' for i in range(39, 30, -1))
        assert all('daily' in result.reasons[f'orders-{i:02d}'] for i in range(7))
        assert result.reasons['orders-00'][0] == 'window'

    def test_min_age_window_and_daily_tier_with_short_max_age(self):
        """A max_age shorter than every artifact's age still keeps the newest."""
        snapshot = [
            ArtifactSnapshot(f'orders-{i:02d}', NOW - timedelta(days=i), 'verified')
            for i in range(2, 40)
        ]
        retention = policy(min_age_hours=24, window_days=30, max_age_days=1,
                           tiers=[{'period': 'daily', 'keep': 7}])

        result = plan(snapshot, retention, NOW)

        assert result.keep == frozenset({'orders-02'})
        assert result.expire == tuple(f'orders-{i:02d}' for i in range(39, 2, -1))

    def test_empty_snapshot(self):
        result = plan([], policy(tiers=[{'period': 'daily', 'keep': 7}]), NOW)

        assert result.keep == frozenset()
        assert result.expire == ()

    def test_plan_is_deterministic(self):
        snapshot = daily_snapshot(40)
        retention = policy(window_days=3, tiers=[{'period': 'weekly', 'keep': 4}])

        assert plan(snapshot, retention, NOW) == plan(list(reversed(snapshot)), retention, NOW)

    def test_aware_and_naive_times_mix(self):
        snapshot = daily_snapshot(10)
        aware_now = NOW.replace(tzinfo=timezone.utc)

        assert plan(snapshot, policy(window_days=2), aware_now) == plan(snapshot, policy(window_days=2), NOW)


class TestRetentionPolicy:
    """Test RetentionPolicy parsing and validation."""

    def test_from_dict(self):
        retention = RetentionPolicy.from_dict({
            'min_age_hours': 12,
            'window_days': 7,
            'max_age_days': 365,
            'tiers': [{'period': 'daily', 'keep': 7}, {'period': 'monthly', 'keep': 12}]
        })

        assert retention.min_age == timedelta(hours=12)
        assert retention.window == timedelta(days=7)
        assert retention.max_age == timedelta(days=365)
        assert retention.tiers == (RetentionTier('daily', 7), RetentionTier('monthly', 12))

    def test_defaults(self):
        retention = RetentionPolicy.from_dict({})

        assert retention.min_age == timedelta(0)
        assert retention.window == timedelta(0)
        assert retention.max_age is None
        assert retention.tiers == ()

    def test_to_dict_round_trip(self):
        data = {'min_age_hours': 6, 'window_days': 2, 'max_age_days': 90,
                'tiers': [{'period': 'weekly', 'keep': 4}]}

        assert RetentionPolicy.from_dict(RetentionPolicy.from_dict(data).to_dict()) == RetentionPolicy.from_dict(data)

    @pytest.mark.parametrize('data', [
        {'keep_daily': 7},
        {'tiers': [{'period': 'fortnightly', 'keep': 2}]},
        {'tiers': [{'period': 'daily', 'keep': 2}, {'period': 'daily', 'keep': 3}]},
        {'tiers': [{'period': 'daily', 'keep': -1}]},
        {'tiers': [{'period': 'daily', 'keep': True}]},
        {'tiers': [{'period': 'daily', 'keep': '7'}]},
        {'tiers': {'period': 'daily', 'keep': 7}},
        {'window_days': -1},
        {'min_age_hours': 'a day'},
        {'min_age_hours': 48, 'max_age_days': 1},
        ['daily', 7],
    ])
    def test_invalid_policies(self, data):
        with pytest.raises(RetentionPolicyError):
            RetentionPolicy.from_dict(data)
