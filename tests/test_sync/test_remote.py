"""Tests for the HTTP remote client, using httpx.MockTransport."""

import json

import httpx
import pytest

from protech.sync.errors import (
    DeliveryError,
    InsecureTransportError,
    SettingsPersistenceError,
    StaleConnectionError,
)
from protech.sync.operations import OfflineOperation, OperationKind
from protech.sync.remote import SESSION_KEY, RemoteClient, ResponseCache


class Recorder:
    """Transport handler that records requests and replies with ``status``."""

    def __init__(self, status=201, body=None):
        self.status = status
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is not None:
            return httpx.Response(self.status, json=self.body)
        return httpx.Response(self.status)


def _client(handler, store=None, url="https://api.example.com",
            require_https=False):
    client = RemoteClient(store, transport=httpx.MockTransport(handler))
    client.reconfigure(url, "anon-key", require_https=require_https)
    return client


def _op(kind=OperationKind.CREATE, payload=None):
    return OfflineOperation(
        entity_type="customer", entity_id="c-1", kind=kind,
        payload=payload or {"id": "c-1", "first_name": "Ada"},
    )


class TestDeliver:
    def test_create_is_upsert(self):
        rec = Recorder()
        client = _client(rec)
        client.deliver(_op())

        request = rec.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/customers"
        assert "merge-duplicates" in request.headers["Prefer"]
        assert json.loads(request.content)["first_name"] == "Ada"

    def test_delete_patches_tombstone(self):
        rec = Recorder(status=204)
        client = _client(rec)
        client.deliver(_op(OperationKind.DELETE,
                           {"id": "c-1", "deleted_at": "2025-01-01T00:00:00"}))

        request = rec.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.c-1"
        assert json.loads(request.content) == {
            "deleted_at": "2025-01-01T00:00:00",
        }

    def test_auth_headers_use_key_without_session(self):
        rec = Recorder()
        client = _client(rec)
        client.deliver(_op())
        headers = rec.requests[0].headers
        assert headers["apikey"] == "anon-key"
        assert headers["Authorization"] == "Bearer anon-key"

    def test_auth_headers_prefer_session(self):
        rec = Recorder()
        client = _client(rec)
        client.set_session("user-jwt")
        client.deliver(_op())
        assert rec.requests[0].headers["Authorization"] == "Bearer user-jwt"

    def test_http_error_raises_delivery_error(self):
        client = _client(Recorder(status=500))
        with pytest.raises(DeliveryError, match="HTTP 500"):
            client.deliver(_op())

    def test_network_error_raises_delivery_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(refuse)
        with pytest.raises(DeliveryError):
            client.deliver(_op())

    def test_timeout_raises_delivery_error(self):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(slow)
        with pytest.raises(DeliveryError, match="Timed out"):
            client.deliver(_op())

    def test_unconfigured_client_refuses(self):
        client = RemoteClient()
        with pytest.raises(DeliveryError):
            client.deliver(_op())

    def test_plain_http_refused_when_https_required(self):
        client = _client(Recorder(), url="http://api.example.com",
                         require_https=True)
        with pytest.raises(InsecureTransportError):
            client.deliver(_op())


class TestGeneration:
    def test_reconfigure_bumps_generation(self):
        client = _client(Recorder())
        before = client.generation
        client.reconfigure("https://other.example.com", "k")
        assert client.generation == before + 1
        assert client.url == "https://other.example.com"

    def test_stale_generation_refused(self):
        rec = Recorder()
        client = _client(rec)
        stale = client.generation
        client.reconfigure("https://other.example.com", "k")
        with pytest.raises(StaleConnectionError):
            client.deliver(_op(), generation=stale)
        assert rec.requests == []

    def test_empty_url_leaves_client_unconfigured(self):
        client = _client(Recorder())
        client.reconfigure("", "")
        assert not client.is_configured


class TestSession:
    def test_session_persisted(self, store):
        client = RemoteClient(store)
        assert client.set_session("jwt") is True
        assert store.load(SESSION_KEY) == "jwt"
        assert RemoteClient(store).session_token == "jwt"

    def test_clear_session_removes_token(self, store):
        client = RemoteClient(store)
        client.set_session("jwt")
        client.clear_session()
        assert client.session_token is None
        assert store.load(SESSION_KEY) is None

    def test_session_kept_in_memory_when_save_fails(self, store, monkeypatch):
        def broken(key, value):
            raise SettingsPersistenceError("read-only")

        monkeypatch.setattr(store, "save", broken)
        client = RemoteClient(store)
        assert client.set_session("jwt") is False
        assert client.session_token == "jwt"


class TestFetchRows:
    def test_rows_are_cached(self):
        rec = Recorder(status=200, body=[{"id": "c-1"}])
        client = _client(rec)
        assert client.fetch_rows("customer") == [{"id": "c-1"}]
        assert client.fetch_rows("customer") == [{"id": "c-1"}]
        assert len(rec.requests) == 1
        assert rec.requests[0].url.params["deleted_at"] == "is.null"

    def test_cache_disabled(self):
        rec = Recorder(status=200, body=[])
        client = _client(rec)
        client.configure_cache(False, 60)
        client.fetch_rows("customer")
        client.fetch_rows("customer")
        assert len(rec.requests) == 2

    def test_clear_cache_refetches(self):
        rec = Recorder(status=200, body=[])
        client = _client(rec)
        client.fetch_rows("ticket")
        client.clear_cache()
        client.fetch_rows("ticket")
        assert len(rec.requests) == 2

    def test_updated_since_filter(self):
        rec = Recorder(status=200, body=[])
        client = _client(rec)
        client.fetch_rows("ticket", updated_since="2025-01-01T00:00:00")
        assert rec.requests[0].url.params["updated_at"] == (
            "gt.2025-01-01T00:00:00"
        )

    def test_fetch_error_raises(self):
        client = _client(Recorder(status=401, body={"message": "no"}))
        with pytest.raises(DeliveryError):
            client.fetch_rows("customer")

    def test_include_deleted_drops_tombstone_filter(self):
        rec = Recorder(status=200, body=[])
        client = _client(rec)
        client.fetch_rows("customer", include_deleted=True)
        assert "deleted_at" not in rec.requests[0].url.params
        assert rec.requests[0].url.params["order"] == "updated_at.asc"

    def test_old_generation_refused(self):
        rec = Recorder(status=200, body=[])
        client = _client(rec)
        generation = client.generation
        client.reconfigure("https://other.example.com", "anon-key")
        with pytest.raises(StaleConnectionError):
            client.fetch_rows("customer", generation=generation)
        assert rec.requests == []


class TestResponseCache:
    def test_expires_after_ttl(self):
        now = [0.0]
        cache = ResponseCache(ttl=10, clock=lambda: now[0])
        cache.put("k", 1)
        assert cache.get("k") == 1
        now[0] = 11
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_disabled_cache_stores_nothing(self):
        cache = ResponseCache(enabled=False)
        cache.put("k", 1)
        assert cache.get("k") is None
