"""
Tests for RealtimeSyncService

Tests cover:
- Channel handshake, outbox replay and REQUEST_SYNC on connect
- Optimistic CRUD and listener notification
- Last-writer-wins apply of remote updates (idempotent, order independent)
- FULL_SYNC replacement with pending and in-flight changes laid over it
- Offline durability and reconnect exhaustion
- HTTP backup sync
"""

import json

import httpx
import pytest

from telesync.client.connection import ConnectionState, RetryConfig
from telesync.client.local_store import LocalStore
from telesync.client.sync_service import RealtimeSyncService
from telesync.errors import DocumentNotFoundError

from conftest import settle

WS = "ws://hub.local:8080/sync"
HTTP = "http://hub.local:8080/api"


def make_service(store, connector=None, **kwargs) -> RealtimeSyncService:
    return RealtimeSyncService(
        store,
        retry_config=RetryConfig(max_retries=2, initial_delay=0, jitter=0),
        backup_interval=3600,
        connect_factory=connector,
        **kwargs,
    )


def update_frame(collection, document, from_device="other-device"):
    return json.dumps({
        "type": "DATA_UPDATE",
        "data": {"collection": collection, "document": document, "timestamp": document.get("lastModified")},
        "timestamp": document.get("lastModified"),
        "fromDevice": from_device,
    })


# ===== Connecting =====

class TestConnect:
    """Tests for the channel handshake"""

    @pytest.mark.asyncio
    async def test_handshake_url_and_request_sync(self, store, connector):
        """Channel opens with userId/deviceId and asks for a snapshot"""
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)

        assert connector.urls == [f"{WS}?userId=u1&deviceId=d1"]
        assert service.is_connected
        assert service.state == ConnectionState.CONNECTED
        assert connector.last.sent_types() == ["REQUEST_SYNC"]
        assert connector.last.sent[0]["userId"] == "u1"

        await service.close()

    @pytest.mark.asyncio
    async def test_outbox_replayed_before_request_sync(self, store, connector):
        """Changes queued offline go out in order ahead of REQUEST_SYNC"""
        service = make_service(store, connector)
        await service.add_data("consultations", {"id": "c1"})
        await service.update_data("consultations", "c1", {"status": "accepted"})
        assert store.pending_count() == 2

        await service.initialize("u1", "d1", WS, HTTP)

        channel = connector.last
        assert channel.sent_types() == ["DATA_UPDATE", "DATA_UPDATE", "REQUEST_SYNC"]
        assert channel.sent[1]["data"]["document"]["status"] == "accepted"
        assert store.pending_count() == 0

        await service.close()

    @pytest.mark.asyncio
    async def test_state_callbacks(self, store, connector):
        service = make_service(store, connector)
        states = []
        service.on_state_change(states.append)

        await service.initialize("u1", "d1", WS, HTTP)
        await service.disconnect()

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]
        await service.close()


# ===== Local CRUD =====

class TestCrud:
    """Tests for optimistic local writes"""

    @pytest.mark.asyncio
    async def test_add_is_visible_immediately(self, store, connector):
        """Read-your-writes: the document is local before any network I/O"""
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)

        doc_id = await service.add_data("appointments", {"date": "2026-01-02"})

        doc = service.get_document("appointments", doc_id)
        assert doc["date"] == "2026-01-02"
        assert doc["deviceId"] == "d1"
        assert doc["userId"] == "u1"
        assert isinstance(doc["lastModified"], int)

        sent = connector.last.sent[-1]
        assert sent["type"] == "DATA_UPDATE"
        assert sent["data"]["collection"] == "appointments"
        assert sent["data"]["document"]["id"] == doc_id

        await service.close()

    @pytest.mark.asyncio
    async def test_add_keeps_supplied_id(self, store):
        service = make_service(store)
        assert await service.add_data("prescriptions", {"id": "rx1"}) == "rx1"

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, store):
        service = make_service(store)
        with pytest.raises(DocumentNotFoundError):
            await service.update_data("consultations", "nope", {"status": "x"})

    @pytest.mark.asyncio
    async def test_update_advances_last_modified(self, store):
        """An update is stamped strictly after the version it replaces"""
        service = make_service(store)
        far_future = 9_999_999_999_999
        store.put_document("consultations", {"id": "c1", "lastModified": far_future})

        doc = await service.update_data("consultations", "c1", {"status": "done"})

        assert doc["lastModified"] > far_future
        assert doc["status"] == "done"

    @pytest.mark.asyncio
    async def test_delete_absent_still_propagates(self, store, connector):
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)
        events = []
        service.subscribe("appointments", events.append)

        await service.delete_data("appointments", "ghost")

        assert events[0]["operation"] == "delete"
        assert connector.last.sent[-1]["type"] == "DATA_DELETE"
        assert connector.last.sent[-1]["data"] == {"collection": "appointments", "documentId": "ghost"}

        await service.close()

    @pytest.mark.asyncio
    async def test_send_failure_falls_back_to_outbox(self, store, connector):
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)
        connector.last.fail_sends = True

        await service.add_data("consultations", {"id": "c1"})

        assert store.pending_count() == 1
        assert store.pending_changes()[0].document_id == "c1"

        await service.close()


# ===== Subscriptions =====

class TestSubscriptions:
    """Tests for collection listeners"""

    @pytest.mark.asyncio
    async def test_event_shape(self, store):
        service = make_service(store)
        events = []
        service.subscribe("consultations", events.append)

        await service.add_data("consultations", {"id": "c1"})

        assert events[0]["operation"] == "add"
        assert events[0]["collection"] == "consultations"
        assert events[0]["data"]["id"] == "c1"

    def test_unsubscribe_removes_one_registration(self, store):
        """Same callback registered twice; unsubscribing one keeps the other"""
        service = make_service(store)
        callback = lambda event: None
        first = service.subscribe("doctors", callback)
        service.subscribe("doctors", callback)

        first()
        first()

        assert service.listener_count("doctors") == 1

    def test_listener_error_isolated(self, store):
        service = make_service(store)
        received = []

        def broken(event):
            raise RuntimeError("boom")

        service.subscribe("doctors", broken)
        service.subscribe("doctors", received.append)

        service.apply_remote_update({"collection": "doctors", "document": {"id": "d1", "lastModified": 1}})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_disconnect_keeps_listeners_close_drops_them(self, store, connector):
        service = make_service(store, connector)
        service.subscribe("doctors", lambda event: None)
        await service.initialize("u1", "d1", WS, HTTP)

        await service.disconnect()
        assert service.listener_count() == 1

        await service.close()
        assert service.listener_count() == 0


# ===== Remote updates =====

class TestRemoteUpdates:
    """Tests for last-writer-wins apply"""

    def test_newer_update_applied(self, store):
        service = make_service(store)
        store.put_document("consultations", {"id": "c1", "lastModified": 100, "status": "old"})

        assert service.apply_remote_update({
            "collection": "consultations",
            "document": {"id": "c1", "lastModified": 200, "status": "new"},
        })
        assert store.get_document("consultations", "c1")["status"] == "new"

    def test_older_update_discarded(self, store):
        service = make_service(store)
        store.put_document("consultations", {"id": "c1", "lastModified": 200, "status": "local"})

        assert not service.apply_remote_update({
            "collection": "consultations",
            "document": {"id": "c1", "lastModified": 100, "status": "stale"},
        })
        assert store.get_document("consultations", "c1")["status"] == "local"

    def test_duplicate_delivery_is_idempotent(self, store):
        """The same update twice changes state and notifies only once"""
        service = make_service(store)
        events = []
        service.subscribe("appointments", events.append)
        update = {"collection": "appointments", "document": {"id": "a1", "lastModified": 50}}

        assert service.apply_remote_update(update)
        assert not service.apply_remote_update(update)

        assert len(events) == 1
        assert events[0]["operation"] == "add"

    def test_arrival_order_does_not_matter(self, tmp_path):
        """Two replicas receiving the same updates in opposite order converge"""
        older = {"collection": "appointments", "document": {"id": "a1", "lastModified": 10, "v": "old"}}
        newer = {"collection": "appointments", "document": {"id": "a1", "lastModified": 20, "v": "new"}}

        first = make_service(LocalStore(tmp_path / "one.db"))
        second = make_service(LocalStore(tmp_path / "two.db"))
        first.apply_remote_update(older)
        first.apply_remote_update(newer)
        second.apply_remote_update(newer)
        second.apply_remote_update(older)

        assert first.get_data("appointments") == second.get_data("appointments")
        assert first.get_document("appointments", "a1")["v"] == "new"

    def test_invalid_payload_ignored(self, store):
        service = make_service(store)
        assert not service.apply_remote_update({"collection": "x", "document": {"no": "id"}})
        assert not service.apply_remote_update(None)

    def test_remote_delete_notifies_only_when_present(self, store):
        service = make_service(store)
        events = []
        service.subscribe("appointments", events.append)
        store.put_document("appointments", {"id": "a1", "date": "today"})

        assert service.apply_remote_delete({"collection": "appointments", "documentId": "a1"})
        assert not service.apply_remote_delete({"collection": "appointments", "documentId": "a1"})

        assert len(events) == 1
        assert events[0]["data"]["date"] == "today"

    @pytest.mark.asyncio
    async def test_handle_message_dispatch(self, store):
        service = make_service(store)
        await service.handle_message(update_frame("doctors", {"id": "d1", "lastModified": 5}))
        assert service.get_document("doctors", "d1") is not None

        await service.handle_message(json.dumps({
            "type": "DATA_DELETE",
            "data": {"collection": "doctors", "documentId": "d1"},
        }))
        assert service.get_document("doctors", "d1") is None

    @pytest.mark.asyncio
    async def test_malformed_frame_ignored(self, store):
        service = make_service(store)
        await service.handle_message("not json at all")
        assert store.collections() == []

    @pytest.mark.asyncio
    async def test_ping_answered_with_pong(self, store, connector):
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)

        await service.handle_message('{"type": "PING"}')

        assert connector.last.sent_types()[-1] == "PONG"
        await service.close()


# ===== Full sync =====

class TestFullSync:
    """Tests for FULL_SYNC replacement"""

    def test_replaces_present_collections_only(self, store):
        service = make_service(store)
        store.put_document("doctors", {"id": "stale"})
        store.put_document("consultations", {"id": "keep"})

        replaced = service.apply_full_sync({"doctors": [{"id": "d1"}]})

        assert replaced == ["doctors"]
        assert [d["id"] for d in service.get_data("doctors")] == ["d1"]
        assert [d["id"] for d in service.get_data("consultations")] == ["keep"]

    def test_sync_event_per_collection(self, store):
        service = make_service(store)
        events = []
        service.subscribe("doctors", events.append)

        service.apply_full_sync({"doctors": [{"id": "d1"}], "appointments": []})

        assert events == [{"operation": "sync", "data": [{"id": "d1"}], "collection": "doctors"}]

    @pytest.mark.asyncio
    async def test_pending_changes_survive_snapshot(self, store):
        """Offline writes are not wiped by a snapshot that predates them"""
        service = make_service(store)
        await service.add_data("consultations", {"id": "offline"})
        store.put_document("consultations", {"id": "gone"})
        await service.delete_data("consultations", "server-doc")

        service.apply_full_sync({"consultations": [{"id": "server-doc"}, {"id": "other"}]})

        ids = [d["id"] for d in service.get_data("consultations")]
        assert ids == ["other", "offline"]

    @pytest.mark.asyncio
    async def test_in_flight_changes_overlay_until_confirmed_snapshot(self, store, connector):
        """
        The hub's connect-time snapshot predates a live send; the send stays
        visible until the snapshot that follows CONNECTION_CONFIRMED.
        """
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)

        await service.add_data("appointments", {"id": "a1"})
        assert store.pending_count() == 0

        await service.handle_message(json.dumps({"type": "FULL_SYNC", "data": {"appointments": []}}))
        assert service.get_document("appointments", "a1") is not None

        await service.handle_message(json.dumps({"type": "CONNECTION_CONFIRMED", "userId": "u1", "deviceId": "d1"}))
        await service.handle_message(json.dumps({"type": "FULL_SYNC", "data": {"appointments": []}}))
        assert service.get_document("appointments", "a1") is not None

        # Overlay cleared: the hub snapshot is authoritative again
        await service.handle_message(json.dumps({"type": "FULL_SYNC", "data": {"appointments": []}}))
        assert service.get_document("appointments", "a1") is None

        await service.close()


# ===== Offline / reconnect =====

class TestOfflineAndReconnect:
    """Tests for durability and the reconnect policy"""

    @pytest.mark.asyncio
    async def test_offline_writes_durable_across_restart(self, tmp_path, connector):
        """Changes made offline survive a process restart and flush on connect"""
        path = tmp_path / "device.db"
        connector.available = False

        service = make_service(LocalStore(path), connector)
        await service.initialize("u1", "d1", WS, HTTP)
        await service.add_data("prescriptions", {"id": "rx1"})
        await service.close()

        connector.available = True
        restarted = make_service(LocalStore(path), connector)
        assert restarted.get_document("prescriptions", "rx1") is not None

        await restarted.initialize("u1", "d1", WS, HTTP)
        assert connector.last.sent_types() == ["DATA_UPDATE", "REQUEST_SYNC"]
        assert restarted.store.pending_count() == 0

        await restarted.close()

    @pytest.mark.asyncio
    async def test_retries_bounded_then_failed(self, store, connector):
        """One initial attempt plus max_retries, then FAILED with no more attempts"""
        connector.available = False
        service = make_service(store, connector)

        await service.initialize("u1", "d1", WS, HTTP)
        await settle(10)

        assert len(connector.urls) == 3
        assert service.state == ConnectionState.FAILED
        assert service.get_sync_status()["retriesExhausted"] is True
        assert service.reconnect_attempts == 2

        await settle(10)
        assert len(connector.urls) == 3

        await service.close()

    @pytest.mark.asyncio
    async def test_failed_initial_sync_closes_channel(self, store, connector):
        """A channel that dies during the handshake sends is closed, not orphaned"""
        connector.fail_sends = True
        service = make_service(store, connector)

        await service.initialize("u1", "d1", WS, HTTP)
        await settle(10)

        assert len(connector.channels) == 3
        assert all(channel.closed for channel in connector.channels)
        assert service.state == ConnectionState.FAILED
        assert not service.is_connected

        await service.close()

    @pytest.mark.asyncio
    async def test_reconnects_after_channel_loss(self, store, connector):
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)
        first = connector.last

        first.drop()
        await settle(10)

        assert len(connector.channels) == 2
        assert service.is_connected
        assert service.health.total_reconnects == 1
        assert connector.last.sent_types() == ["REQUEST_SYNC"]

        await service.close()

    @pytest.mark.asyncio
    async def test_initialize_resets_exhausted_retries(self, store, connector):
        connector.available = False
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)
        await settle(10)
        assert service.state == ConnectionState.FAILED

        connector.available = True
        await service.initialize("u1", "d1", WS, HTTP)

        assert service.is_connected
        assert service.get_sync_status()["retriesExhausted"] is False
        await service.close()


# ===== HTTP backup =====

class TestHttpSync:
    """Tests for the HTTP backup poll"""

    def _service(self, store, handler):
        service = make_service(store, http_transport=httpx.MockTransport(handler))
        service.user_id = "u1"
        service.device_id = "d1"
        service.http_endpoint = HTTP
        return service

    @pytest.mark.asyncio
    async def test_snapshot_applied(self, store):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"doctors": [{"id": "d1"}]})

        service = self._service(store, handler)
        assert await service.perform_http_sync() is True

        assert requests[0].url.path == "/api/sync/u1"
        assert requests[0].headers["Device-ID"] == "d1"
        assert [d["id"] for d in service.get_data("doctors")] == ["d1"]

    @pytest.mark.asyncio
    async def test_error_status_ignored(self, store):
        service = self._service(store, lambda request: httpx.Response(500))
        assert await service.perform_http_sync() is False

    @pytest.mark.asyncio
    async def test_transport_error_ignored(self, store):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        service = self._service(store, handler)
        assert await service.perform_http_sync() is False

    @pytest.mark.asyncio
    async def test_not_initialized(self, store):
        service = make_service(store)
        assert await service.perform_http_sync() is False


# ===== Status =====

class TestStatus:
    """Tests for get_sync_status"""

    @pytest.mark.asyncio
    async def test_status_fields(self, store, connector):
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)

        status = service.get_sync_status()

        assert status["connected"] is True
        assert status["state"] == "connected"
        assert status["pendingChanges"] == 0
        assert status["healthy"] is True
        assert status["userId"] == "u1"
        assert status["deviceId"] == "d1"

        await service.close()

    @pytest.mark.asyncio
    async def test_synced_after_confirmed_snapshot(self, store, connector):
        service = make_service(store, connector)
        await service.initialize("u1", "d1", WS, HTTP)
        assert service.is_synced is False

        await service.handle_message(json.dumps({"type": "FULL_SYNC", "data": {}}))
        await service.handle_message(json.dumps({"type": "CONNECTION_CONFIRMED", "userId": "u1", "deviceId": "d1"}))
        assert service.is_synced is False

        await service.handle_message(json.dumps({"type": "FULL_SYNC", "data": {}}))
        assert service.is_synced is True
        assert service.get_sync_status()["synced"] is True

        await service.close()
