"""Tests for lease based cross-process locking."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from urllib3.exceptions import MaxRetryError

from fakes import BASE_TIME, api_error
from sa_token_operator.errors import LeaseContentionError, StoreError
from sa_token_operator.lease import LEASE_BACKOFF, LeaseManager, lease_expired, lease_name, micro_time
from sa_token_operator.utils.backoff import Backoff

FAST = Backoff(duration=0.0, steps=50)


def _lease(acquire_time=None, duration=30, created=None, resource_version="1", renew_time=None):
    return client.V1Lease(
        metadata=client.V1ObjectMeta(
            name="sa-token-lease-builder",
            namespace="default",
            creation_timestamp=created,
            resource_version=resource_version,
        ),
        spec=client.V1LeaseSpec(
            holder_identity="other",
            lease_duration_seconds=duration,
            acquire_time=acquire_time,
            renew_time=renew_time,
        ),
    )


class TestLeaseName:
    """Test cases for lease_name function."""

    def test_lease_name(self):
        """Test the lease name prefix."""
        assert lease_name("builder") == "sa-token-lease-builder"

    def test_default_backoff(self):
        """Test the default lease retry budget."""
        assert LEASE_BACKOFF.duration == 0.5
        assert LEASE_BACKOFF.factor == 1.0
        assert LEASE_BACKOFF.jitter == 1.0
        assert LEASE_BACKOFF.steps == 50


class TestLeaseExpired:
    """Test cases for lease_expired function."""

    def test_fresh_lease_not_expired(self):
        """Test that a lease within its duration is held."""
        now = BASE_TIME + timedelta(seconds=10)
        assert lease_expired(_lease(acquire_time=BASE_TIME), now=now) is False

    def test_old_lease_expired(self):
        """Test that a lease past its duration is expired."""
        now = BASE_TIME + timedelta(seconds=31)
        assert lease_expired(_lease(acquire_time=BASE_TIME), now=now) is True

    def test_falls_back_to_creation_timestamp(self):
        """Test that creation time is used when acquire time is missing."""
        now = BASE_TIME + timedelta(seconds=31)
        assert lease_expired(_lease(created=BASE_TIME), now=now) is True

    def test_no_duration_never_expires(self):
        """Test that leases without a duration are never reclaimed."""
        now = BASE_TIME + timedelta(days=1)
        assert lease_expired(_lease(acquire_time=BASE_TIME, duration=None), now=now) is False

    def test_renew_time_preferred(self):
        """Test that a recent renewal keeps an old lease alive."""
        now = BASE_TIME + timedelta(seconds=60)
        lease = _lease(acquire_time=BASE_TIME, renew_time=BASE_TIME + timedelta(seconds=45))
        assert lease_expired(lease, now=now) is False

    def test_stale_renew_time_expired(self):
        """Test that a lease not renewed within its duration is expired."""
        now = BASE_TIME + timedelta(seconds=60)
        lease = _lease(acquire_time=BASE_TIME, renew_time=BASE_TIME + timedelta(seconds=20))
        assert lease_expired(lease, now=now) is True

    def test_no_timestamps_never_expires(self):
        """Test that a lease with no time information is treated as held."""
        assert lease_expired(_lease()) is False

    def test_naive_timestamp_treated_as_utc(self):
        """Test that naive timestamps are compared as UTC."""
        naive = datetime(2024, 1, 1)
        now = datetime(2024, 1, 1, 0, 1, tzinfo=timezone.utc)
        assert lease_expired(_lease(acquire_time=naive), now=now) is True


class TestLeaseManager:
    """Test cases for LeaseManager."""

    def test_build_lease(self):
        """Test the lease object carries holder identity and duration."""
        manager = LeaseManager(MagicMock(), holder_identity="me", lease_duration_seconds=15)
        lease = manager.build_lease("default", "builder")

        assert lease.metadata.name == "sa-token-lease-builder"
        assert lease.metadata.namespace == "default"
        assert lease.spec.holder_identity == "me"
        assert lease.spec.lease_duration_seconds == 15
        assert lease.spec.acquire_time is not None
        assert lease.spec.renew_time == lease.spec.acquire_time

    def test_acquire_and_release(self, cluster):
        """Test that acquiring creates the lease and releasing deletes it."""
        manager = LeaseManager(cluster.coordination, backoff=FAST)

        assert manager.acquire("default", "builder") == 1
        assert ("default", "sa-token-lease-builder") in cluster.leases

        assert manager.release("default", "builder") is True
        assert cluster.leases == {}

    def test_acquire_retries_on_conflict(self):
        """Test that 409 responses are retried until the lease frees up."""
        api = MagicMock()
        api.create_namespaced_lease.side_effect = [api_error(409)] * 9 + [MagicMock()]
        api.read_namespaced_lease.return_value = _lease(acquire_time=datetime.now(timezone.utc))
        manager = LeaseManager(api, backoff=FAST)

        assert manager.acquire("default", "builder") == 10
        assert api.create_namespaced_lease.call_count == 10
        api.delete_namespaced_lease.assert_not_called()

    def test_acquire_contention_exhausted(self):
        """Test that a lease held for the whole budget raises LeaseContentionError."""
        api = MagicMock()
        api.create_namespaced_lease.side_effect = api_error(409)
        manager = LeaseManager(api, backoff=Backoff(duration=0.0, steps=5), reclaim_expired=False)

        with pytest.raises(LeaseContentionError) as exc_info:
            manager.acquire("default", "builder")

        assert exc_info.value.attempts == 5
        assert "default/sa-token-lease-builder" in str(exc_info.value)
        assert api.create_namespaced_lease.call_count == 5

    def test_acquire_other_error_not_retried(self):
        """Test that non-conflict errors abort immediately as StoreError."""
        api = MagicMock()
        api.create_namespaced_lease.side_effect = api_error(403, "Forbidden")
        manager = LeaseManager(api, backoff=FAST)

        with pytest.raises(StoreError) as exc_info:
            manager.acquire("default", "builder")

        assert exc_info.value.status == 403
        assert api.create_namespaced_lease.call_count == 1

    def test_acquire_reclaims_expired_lease(self, cluster):
        """Test that a lease left behind by a crashed holder is reclaimed."""
        stale = LeaseManager(cluster.coordination, holder_identity="crashed", backoff=FAST)
        stale.acquire("default", "builder")
        record = cluster.leases[("default", "sa-token-lease-builder")]
        record["acquire_time"] = record["renew_time"] = datetime.now(timezone.utc) - timedelta(minutes=5)

        manager = LeaseManager(cluster.coordination, holder_identity="me", backoff=FAST)
        assert manager.acquire("default", "builder") == 1
        assert cluster.leases[("default", "sa-token-lease-builder")]["holder"] == "me"

    def test_acquire_does_not_reclaim_when_disabled(self, cluster):
        """Test that expired leases are left alone when reclaim is off."""
        stale = LeaseManager(cluster.coordination, holder_identity="crashed", backoff=FAST)
        stale.acquire("default", "builder")
        record = cluster.leases[("default", "sa-token-lease-builder")]
        record["acquire_time"] = record["renew_time"] = datetime.now(timezone.utc) - timedelta(minutes=5)

        manager = LeaseManager(
            cluster.coordination, backoff=Backoff(duration=0.0, steps=3), reclaim_expired=False
        )
        with pytest.raises(LeaseContentionError):
            manager.acquire("default", "builder")
        assert cluster.leases[("default", "sa-token-lease-builder")]["holder"] == "crashed"

    def test_acquire_does_not_reclaim_live_lease(self, cluster):
        """Test that a lease within its duration is never deleted."""
        LeaseManager(cluster.coordination, holder_identity="other", backoff=FAST).acquire("default", "builder")

        manager = LeaseManager(cluster.coordination, backoff=Backoff(duration=0.0, steps=3))
        with pytest.raises(LeaseContentionError):
            manager.acquire("default", "builder")
        assert cluster.leases[("default", "sa-token-lease-builder")]["holder"] == "other"

    def test_reclaim_conflict_keeps_waiting(self):
        """Test that a lease renewed during reclaim is not taken."""
        api = MagicMock()
        api.create_namespaced_lease.side_effect = api_error(409)
        api.read_namespaced_lease.return_value = _lease(acquire_time=BASE_TIME)
        api.delete_namespaced_lease.side_effect = api_error(409, "Conflict")
        manager = LeaseManager(api, backoff=Backoff(duration=0.0, steps=2))

        with pytest.raises(LeaseContentionError):
            manager.acquire("default", "builder")

        options = api.delete_namespaced_lease.call_args.kwargs["body"]
        assert options.preconditions.resource_version == "1"

    def test_release_not_found(self):
        """Test that releasing a missing lease counts as released."""
        api = MagicMock()
        api.delete_namespaced_lease.side_effect = api_error(404)
        assert LeaseManager(api).release("default", "builder") is True

    @patch("sa_token_operator.lease.logger")
    def test_release_failure_logged_not_raised(self, mock_logger):
        """Test that release errors are logged and reported as False."""
        api = MagicMock()
        api.delete_namespaced_lease.side_effect = api_error(500, "Internal Server Error")

        assert LeaseManager(api).release("default", "builder") is False
        mock_logger.error.assert_called_once()
        assert "sa-token-lease-builder" in mock_logger.error.call_args[0][0]

    def test_held_releases_on_error(self, cluster):
        """Test that the lease is released when the guarded block raises."""
        manager = LeaseManager(cluster.coordination, backoff=FAST)

        with pytest.raises(RuntimeError):
            with manager.held("default", "builder"):
                assert cluster.leases
                raise RuntimeError("boom")

        assert cluster.leases == {}

    def test_held_does_not_release_when_acquire_fails(self):
        """Test that a failed acquire never deletes someone else's lease."""
        api = MagicMock()
        api.create_namespaced_lease.side_effect = api_error(409)
        manager = LeaseManager(api, backoff=Backoff(duration=0.0, steps=2), reclaim_expired=False)

        with pytest.raises(LeaseContentionError):
            with manager.held("default", "builder"):
                pass

        api.delete_namespaced_lease.assert_not_called()

    def test_acquire_transport_error_is_store_error(self):
        """Test that a connection failure while creating becomes StoreError."""
        api = MagicMock()
        api.create_namespaced_lease.side_effect = MaxRetryError(None, "/apis/coordination.k8s.io/v1", "connection refused")
        manager = LeaseManager(api, backoff=FAST)

        with pytest.raises(StoreError) as exc_info:
            manager.acquire("default", "builder")

        assert exc_info.value.status is None
        assert "MaxRetryError" in str(exc_info.value)
        assert api.create_namespaced_lease.call_count == 1

    def test_reclaim_read_transport_error_is_store_error(self):
        """Test that a connection failure while inspecting a held lease becomes StoreError."""
        api = MagicMock()
        api.create_namespaced_lease.side_effect = api_error(409)
        api.read_namespaced_lease.side_effect = ConnectionResetError("reset by peer")
        manager = LeaseManager(api, backoff=FAST)

        with pytest.raises(StoreError):
            manager.acquire("default", "builder")

    @patch("sa_token_operator.lease.logger")
    def test_release_transport_error_logged_not_raised(self, mock_logger):
        """Test that a connection failure on release is logged and reported as False."""
        api = MagicMock()
        api.delete_namespaced_lease.side_effect = MaxRetryError(None, "/apis/coordination.k8s.io/v1", "connection refused")

        assert LeaseManager(api).release("default", "builder") is False
        mock_logger.error.assert_called_once()


class TestLeaseOwnership:
    """A holder only ever renews or deletes the lease it created itself."""

    def test_release_uses_uid_precondition(self, cluster):
        """Test that release is guarded by the uid of the created lease."""
        manager = LeaseManager(cluster.coordination, backoff=FAST)
        manager.acquire("default", "builder")
        uid = cluster.leases[("default", "sa-token-lease-builder")]["uid"]

        assert manager.held_uid("default", "builder") == uid
        assert manager.release("default", "builder") is True
        assert manager.held_uid("default", "builder") is None
        assert cluster.leases == {}

    def test_release_after_takeover_keeps_new_holder(self, cluster):
        """Test that an overrun holder releasing late does not free the new holder's lease."""
        slow = LeaseManager(cluster.coordination, holder_identity="slow", backoff=FAST)
        slow.acquire("default", "builder")
        record = cluster.leases[("default", "sa-token-lease-builder")]
        record["acquire_time"] = record["renew_time"] = datetime.now(timezone.utc) - timedelta(minutes=5)

        taker = LeaseManager(cluster.coordination, holder_identity="taker", backoff=FAST)
        taker.acquire("default", "builder")

        assert slow.release("default", "builder") is True
        assert cluster.leases[("default", "sa-token-lease-builder")]["holder"] == "taker"

        third = LeaseManager(cluster.coordination, backoff=Backoff(duration=0.0, steps=3))
        with pytest.raises(LeaseContentionError):
            third.acquire("default", "builder")

        assert taker.release("default", "builder") is True
        assert cluster.leases == {}

    def test_renew_moves_renew_time(self, cluster):
        """Test that renewing pushes the expiry of a held lease forward."""
        manager = LeaseManager(cluster.coordination, backoff=FAST)
        manager.acquire("default", "builder")
        record = cluster.leases[("default", "sa-token-lease-builder")]
        record["renew_time"] = BASE_TIME

        assert manager.renew("default", "builder") is True

        assert record["renew_time"] > BASE_TIME
        assert cluster.lease_renewals == 1

    def test_renew_after_takeover_reports_lost(self, cluster):
        """Test that renewing a lease replaced by another holder fails without touching it."""
        slow = LeaseManager(cluster.coordination, holder_identity="slow", backoff=FAST)
        slow.acquire("default", "builder")
        record = cluster.leases[("default", "sa-token-lease-builder")]
        record["acquire_time"] = record["renew_time"] = datetime.now(timezone.utc) - timedelta(minutes=5)
        LeaseManager(cluster.coordination, holder_identity="taker", backoff=FAST).acquire("default", "builder")
        taker_renew_time = cluster.leases[("default", "sa-token-lease-builder")]["renew_time"]

        assert slow.renew("default", "builder") is False
        assert cluster.leases[("default", "sa-token-lease-builder")]["renew_time"] == taker_renew_time

    def test_renew_transient_error_keeps_going(self):
        """Test that a failed renewal is retried later instead of giving up."""
        api = MagicMock()
        api.patch_namespaced_lease.side_effect = api_error(500)

        assert LeaseManager(api).renew("default", "builder") is True

    def test_renew_body(self):
        """Test that renewals carry a MicroTime and the held uid."""
        api = MagicMock()
        api.create_namespaced_lease.return_value = client.V1Lease(metadata=client.V1ObjectMeta(uid="lease-uid"))
        manager = LeaseManager(api, backoff=FAST)
        manager.acquire("default", "builder")

        manager.renew("default", "builder")

        body = api.patch_namespaced_lease.call_args.kwargs["body"]
        assert body["metadata"] == {"uid": "lease-uid"}
        assert body["spec"]["renewTime"].endswith("Z")

    def test_held_renews_in_background(self, cluster):
        """Test that a lease is kept fresh while the guarded block runs."""
        manager = LeaseManager(cluster.coordination, backoff=FAST, renew_interval=0.01)

        with manager.held("default", "builder"):
            deadline = time.time() + 5
            while cluster.lease_renewals < 2 and time.time() < deadline:
                time.sleep(0.01)

        assert cluster.lease_renewals >= 2
        assert cluster.leases == {}

    def test_micro_time(self):
        """Test the MicroTime wire format."""
        assert micro_time(datetime(2024, 1, 2, 3, 4, 5, 600, tzinfo=timezone.utc)) == "2024-01-02T03:04:05.000600Z"
