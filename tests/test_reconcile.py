"""Tests for the ReconciliationStateMachine.

Each "device" is a state machine with its own LocalCache, talking to the
same in-process server through httpx.ASGITransport. Offline devices use
a MockTransport whose requests all fail to connect.
"""

import asyncio
import json

import httpx
import pytest

from vaultsync.config import ClientSettings
from vaultsync.exceptions import ReconciliationExhausted, SessionLocked
from vaultsync.sync import LocalCache, ReconciliationStateMachine, State, SyncClient
from vaultsync.sync.reconcile import (
    MSG_ALREADY_EXISTS,
    MSG_BAD_CREDENTIALS,
    MSG_NO_COPY,
    MSG_NOT_UPLOADED,
    MSG_OFFLINE,
)
from vaultsync.vault import codec
from vaultsync.vault.key_derivation import derive_keys
from vaultsync.vault.models import AddEntry, DeleteEntry, EditEntry, Vault

PASSWORD = "correct horse battery staple"


def server_vault(server_store, username="alice", password=PASSWORD):
    """Decrypt what the server holds, the way any device would."""
    keys = derive_keys(username, password, iterations=1_000)
    record = server_store.get(username)
    vault, nonce = codec.decrypt(keys.cipher_key, codec.decode_blob(record.blob))
    return vault, nonce, record.counter


def names(session):
    return [e.name for e in session.entries()]


class RecordingTransport(httpx.AsyncBaseTransport):
    """ASGITransport that keeps every blob a device uploads."""

    def __init__(self, app, sent):
        self._inner = httpx.ASGITransport(app=app)
        self._sent = sent

    async def handle_async_request(self, request):
        body = json.loads(request.content or b"{}")
        if body.get("blob"):
            self._sent.append(codec.decode_blob(body["blob"]))
        return await self._inner.handle_async_request(request)


def status_transport(status_code):
    """Transport whose every request gets the same non-protocol answer."""

    def handler(request):
        return httpx.Response(status_code, json={"detail": "nope"})

    return httpx.MockTransport(handler)


# ── Unlock paths ────────────────────────────────────────────────────


class TestCreateNew:
    @pytest.mark.asyncio
    async def test_create_new_vault(self, make_device, server_store):
        device = make_device("laptop")
        result = await device.unlock("alice", PASSWORD, create_new=True)

        assert result.ok
        assert result.history == [State.CREATE_NEW, State.UNLOCKED]
        assert result.session.counter == 1
        assert result.session.entries() == []

        record = device.cache.load(result.session.auth_tag)
        assert record.counter == 1
        assert record.dirty is False
        assert server_store.get("alice").counter == 1

    @pytest.mark.asyncio
    async def test_create_uses_first_nonce(self, make_device, server_store):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        _, nonce, _ = server_vault(server_store)
        assert nonce == b"\x01" + bytes(11)

    @pytest.mark.asyncio
    async def test_create_existing_username_fails(self, make_device):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        result = await make_device("phone").unlock("alice", "other password", create_new=True)

        assert result.state == State.FAILED
        assert result.error == MSG_ALREADY_EXISTS
        assert result.session is None

    @pytest.mark.asyncio
    async def test_create_offline_fails(self, make_device, offline_transport):
        device = make_device("laptop", transport=offline_transport)
        result = await device.unlock("alice", PASSWORD, create_new=True)
        assert result.state == State.FAILED

    @pytest.mark.asyncio
    async def test_create_rejected_by_server_reports_the_error(self, make_device):
        device = make_device("laptop", transport=status_transport(422))
        result = await device.unlock("alice", PASSWORD, create_new=True)
        assert result.state == State.FAILED
        assert result.error.startswith("Vault creation failed:")
        assert "422" in result.error

    @pytest.mark.asyncio
    async def test_empty_credentials_rejected(self, make_device):
        result = await make_device().unlock("alice", "")
        assert result.state == State.FAILED
        assert result.history == [State.FAILED]


class TestPollRemote:
    @pytest.mark.asyncio
    async def test_second_device_adopts_server_copy(self, make_device):
        laptop = make_device("laptop")
        created = await laptop.unlock("alice", PASSWORD, create_new=True)
        await laptop.execute(created.session, AddEntry(name="mail", password="pw"))

        result = await make_device("phone").unlock("alice", PASSWORD)
        assert result.ok
        assert result.history == [State.POLL_REMOTE, State.UNLOCKED]
        assert names(result.session) == ["mail"]
        assert result.session.counter == 2

    @pytest.mark.asyncio
    async def test_up_to_date_cache_used_as_is(self, make_device):
        laptop = make_device("laptop")
        created = await laptop.unlock("alice", PASSWORD, create_new=True)
        await laptop.execute(created.session, AddEntry(name="mail"))

        again = await make_device("laptop").unlock("alice", PASSWORD)
        assert again.ok
        assert again.warning is None
        assert names(again.session) == ["mail"]
        assert again.session.counter == 2

    @pytest.mark.asyncio
    async def test_wrong_password(self, make_device):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        result = await make_device("phone").unlock("alice", "wrong password")

        assert result.state == State.FAILED
        assert result.error == MSG_BAD_CREDENTIALS

    @pytest.mark.asyncio
    async def test_unknown_user(self, make_device):
        result = await make_device().unlock("nobody", PASSWORD)
        assert result.state == State.FAILED
        assert result.error == MSG_BAD_CREDENTIALS


class TestCachedFallback:
    @pytest.mark.asyncio
    async def test_offline_unlock_uses_cache_with_warning(self, make_device, offline_transport):
        laptop = make_device("laptop")
        created = await laptop.unlock("alice", PASSWORD, create_new=True)
        await laptop.execute(created.session, AddEntry(name="mail"))

        offline = make_device("laptop", transport=offline_transport)
        result = await offline.unlock("alice", PASSWORD)

        assert result.ok
        assert result.history == [
            State.POLL_REMOTE,
            State.USE_CACHED_FALLBACK,
            State.UNLOCKED,
        ]
        assert result.warning == MSG_OFFLINE
        assert names(result.session) == ["mail"]

    @pytest.mark.asyncio
    async def test_offline_without_cache_fails(self, make_device, offline_transport):
        result = await make_device("phone", transport=offline_transport).unlock("alice", PASSWORD)
        assert result.state == State.FAILED
        assert result.error == MSG_NO_COPY

    @pytest.mark.asyncio
    async def test_offline_wrong_password_finds_nothing(self, make_device, offline_transport):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        offline = make_device("laptop", transport=offline_transport)
        result = await offline.unlock("alice", "wrong password")
        assert result.state == State.FAILED


# ── Commits ─────────────────────────────────────────────────────────


class TestCommit:
    @pytest.mark.asyncio
    async def test_add_edit_delete(self, make_device, server_store):
        device = make_device()
        session = (await device.unlock("alice", PASSWORD, create_new=True)).session

        add = AddEntry(name="mail", username="alice", password="one")
        first = await device.execute(session, add)
        assert first.accepted
        assert first.counter == 2
        assert first.attempts == 1

        await device.execute(session, EditEntry(entry_id=add.entry_id, password="two"))
        vault, _, counter = server_vault(server_store)
        assert counter == 3
        assert vault.get(add.entry_id).password == "two"

        await device.execute(session, DeleteEntry(entry_id=add.entry_id))
        vault, _, counter = server_vault(server_store)
        assert counter == 4
        assert vault.get(add.entry_id).deleted
        assert session.entries() == []

    @pytest.mark.asyncio
    async def test_every_upload_advances_the_nonce(self, make_device, server_store):
        device = make_device()
        session = (await device.unlock("alice", PASSWORD, create_new=True)).session
        seen = [server_vault(server_store)[1]]
        for i in range(3):
            await device.execute(session, AddEntry(name=f"entry{i}"))
            seen.append(server_vault(server_store)[1])
        values = [codec.nonce_value(n) for n in seen]
        assert values == sorted(set(values))

    @pytest.mark.asyncio
    async def test_edit_unknown_entry(self, make_device):
        device = make_device()
        session = (await device.unlock("alice", PASSWORD, create_new=True)).session
        with pytest.raises(KeyError):
            await device.execute(session, EditEntry(entry_id="missing", name="x"))

    @pytest.mark.asyncio
    async def test_closed_session_rejects_commands(self, make_device):
        device = make_device()
        session = (await device.unlock("alice", PASSWORD, create_new=True)).session
        session.close()
        assert session.entries() == []
        with pytest.raises(SessionLocked):
            await device.execute(session, AddEntry(name="mail"))

    @pytest.mark.asyncio
    async def test_edit_timestamp_beats_skewed_clock(self, tmp_path, server_app):
        settings = ClientSettings(
            server_url="http://vault.test",
            cache_path=tmp_path / "skewed" / "cache.db",
            kdf_iterations=1_000,
            initial_backoff_sec=0.0,
        )
        client = SyncClient.from_settings(settings, transport=httpx.ASGITransport(app=server_app))
        device = ReconciliationStateMachine(
            client, LocalCache(settings.cache_path), settings, clock=lambda: 100
        )
        session = (await device.unlock("alice", PASSWORD, create_new=True)).session

        add = AddEntry(name="mail")
        await device.execute(session, add)
        await device.execute(session, EditEntry(entry_id=add.entry_id, name="webmail"))
        assert session.vault.get(add.entry_id).timestamp == 101

    @pytest.mark.asyncio
    async def test_concurrent_commands_on_one_session_serialize(self, make_device, server_store):
        device = make_device()
        session = (await device.unlock("alice", PASSWORD, create_new=True)).session

        results = await asyncio.gather(
            device.execute(session, AddEntry(name="one")),
            device.execute(session, AddEntry(name="two")),
        )
        assert sorted(r.counter for r in results) == [2, 3]
        assert all(not r.merged for r in results)
        vault, _, _ = server_vault(server_store)
        assert sorted(e.name for e in vault.visible()) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_cache_io_runs_off_the_event_loop(self, tmp_path, server_app):
        import threading

        loop_thread = threading.get_ident()
        threads = []

        class ThreadRecordingCache(LocalCache):
            def load(self, auth_tag):
                threads.append(threading.get_ident())
                return super().load(auth_tag)

            def save(self, auth_tag, blob, counter, dirty):
                threads.append(threading.get_ident())
                return super().save(auth_tag, blob, counter, dirty)

            def mark_clean(self, auth_tag, counter):
                threads.append(threading.get_ident())
                return super().mark_clean(auth_tag, counter)

        settings = ClientSettings(
            server_url="http://vault.test",
            cache_path=tmp_path / "threaded" / "cache.db",
            kdf_iterations=1_000,
            initial_backoff_sec=0.0,
        )
        client = SyncClient.from_settings(settings, transport=httpx.ASGITransport(app=server_app))
        device = ReconciliationStateMachine(client, ThreadRecordingCache(settings.cache_path), settings)
        session = (await device.unlock("alice", PASSWORD, create_new=True)).session
        await device.execute(session, AddEntry(name="mail"))
        await device.unlock("alice", PASSWORD)

        assert len(threads) >= 4
        assert loop_thread not in threads


class TestOfflineWrites:
    @pytest.mark.asyncio
    async def test_offline_change_stays_dirty(self, make_device, offline_transport):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)

        offline = make_device("laptop", transport=offline_transport)
        session = (await offline.unlock("alice", PASSWORD)).session
        result = await offline.execute(session, AddEntry(name="written offline"))

        assert result.accepted is False
        assert result.warning == MSG_NOT_UPLOADED
        assert session.dirty
        assert offline.cache.load(session.auth_tag).dirty

    @pytest.mark.asyncio
    async def test_dirty_cache_flushed_on_next_unlock(
        self, make_device, offline_transport, server_store
    ):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        offline = make_device("laptop", transport=offline_transport)
        session = (await offline.unlock("alice", PASSWORD)).session
        await offline.execute(session, AddEntry(name="written offline"))

        back_online = make_device("laptop")
        result = await back_online.unlock("alice", PASSWORD)

        assert result.ok
        assert result.history == [State.FLUSH_DIRTY, State.UNLOCKED]
        assert result.session.dirty is False
        assert back_online.cache.load(result.session.auth_tag).dirty is False
        vault, _, counter = server_vault(server_store)
        assert counter == 2
        assert [e.name for e in vault.visible()] == ["written offline"]

    @pytest.mark.asyncio
    async def test_flush_merges_with_changes_made_elsewhere(
        self, make_device, offline_transport, server_store
    ):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)

        offline = make_device("laptop", transport=offline_transport)
        laptop_session = (await offline.unlock("alice", PASSWORD)).session
        await offline.execute(laptop_session, AddEntry(name="from laptop"))

        phone = make_device("phone")
        phone_session = (await phone.unlock("alice", PASSWORD)).session
        await phone.execute(phone_session, AddEntry(name="from phone"))

        result = await make_device("laptop").unlock("alice", PASSWORD)
        assert result.ok
        assert names(result.session) == ["from laptop", "from phone"]
        vault, _, counter = server_vault(server_store)
        assert counter == 3
        assert len(vault.visible()) == 2

    @pytest.mark.asyncio
    async def test_explicit_commit_retries_pending_write(
        self, make_device, offline_transport, server_store
    ):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        offline = make_device("laptop", transport=offline_transport)
        session = (await offline.unlock("alice", PASSWORD)).session
        await offline.execute(session, AddEntry(name="pending"))

        online = make_device("laptop")
        result = await online.commit(session)
        assert result.accepted
        assert session.dirty is False
        assert server_store.get("alice").counter == 2


# ── Multi-device conflicts ──────────────────────────────────────────


class TestConflicts:
    @pytest.mark.asyncio
    async def test_concurrent_devices_merge(self, make_device, server_store):
        laptop = make_device("laptop")
        laptop_session = (await laptop.unlock("alice", PASSWORD, create_new=True)).session
        phone = make_device("phone")
        phone_session = (await phone.unlock("alice", PASSWORD)).session

        await laptop.execute(laptop_session, AddEntry(name="bank"))
        result = await phone.execute(phone_session, AddEntry(name="mail"))

        assert result.accepted
        assert result.merged
        assert result.attempts == 2
        assert result.counter == 3
        assert names(phone_session) == ["bank", "mail"]

        warning = await laptop.refresh(laptop_session)
        assert warning is None
        assert names(laptop_session) == ["bank", "mail"]
        assert laptop_session.counter == 3

    @pytest.mark.asyncio
    async def test_merge_keeps_remote_deletion(self, make_device):
        laptop = make_device("laptop")
        laptop_session = (await laptop.unlock("alice", PASSWORD, create_new=True)).session
        add = AddEntry(name="old account")
        await laptop.execute(laptop_session, add)

        phone = make_device("phone")
        phone_session = (await phone.unlock("alice", PASSWORD)).session

        await laptop.execute(laptop_session, DeleteEntry(entry_id=add.entry_id))
        await phone.execute(phone_session, AddEntry(name="new account"))

        assert names(phone_session) == ["new account"]

    @pytest.mark.asyncio
    async def test_merged_upload_nonce_moves_past_both_devices(self, make_device, server_store):
        laptop = make_device("laptop")
        laptop_session = (await laptop.unlock("alice", PASSWORD, create_new=True)).session
        phone = make_device("phone")
        phone_session = (await phone.unlock("alice", PASSWORD)).session

        await laptop.execute(laptop_session, AddEntry(name="bank"))
        _, laptop_nonce, _ = server_vault(server_store)
        await phone.execute(phone_session, AddEntry(name="mail"))
        _, merged_nonce, _ = server_vault(server_store)

        assert codec.nonce_value(merged_nonce) > codec.nonce_value(laptop_nonce)

    @pytest.mark.asyncio
    async def test_refresh_offline_returns_warning(self, make_device, offline_transport):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        offline = make_device("laptop", transport=offline_transport)
        session = (await offline.unlock("alice", PASSWORD)).session
        assert await offline.refresh(session) == MSG_OFFLINE

    @pytest.mark.asyncio
    async def test_refresh_protocol_error_returns_warning(self, make_device):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        broken = make_device("laptop", transport=status_transport(418))
        result = await broken.unlock("alice", PASSWORD)
        assert result.warning == MSG_OFFLINE
        assert await broken.refresh(result.session) == MSG_OFFLINE

    @pytest.mark.asyncio
    async def test_devices_never_upload_under_the_same_nonce(self, make_device, server_app):
        sent = []
        laptop = make_device("laptop", transport=RecordingTransport(server_app, sent))
        laptop_session = (await laptop.unlock("alice", PASSWORD, create_new=True)).session
        phone = make_device("phone", transport=RecordingTransport(server_app, sent))
        phone_session = (await phone.unlock("alice", PASSWORD)).session

        await laptop.execute(laptop_session, AddEntry(name="bank"))
        await phone.execute(phone_session, AddEntry(name="mail"))
        await laptop.execute(laptop_session, AddEntry(name="shop"))
        await phone.execute(phone_session, AddEntry(name="forum"))

        nonces = [blob[:codec.NONCE_LENGTH] for blob in sent]
        assert len(sent) >= 6
        assert len(set(nonces)) == len(nonces)

    @pytest.mark.asyncio
    async def test_dirty_cache_blobs_never_share_a_nonce(self, make_device, offline_transport):
        await make_device("laptop").unlock("alice", PASSWORD, create_new=True)
        laptop = make_device("laptop", transport=offline_transport)
        phone = make_device("phone")
        phone_session = (await phone.unlock("alice", PASSWORD)).session
        laptop_session = (await laptop.unlock("alice", PASSWORD)).session

        await laptop.execute(laptop_session, AddEntry(name="offline"))
        await phone.execute(phone_session, AddEntry(name="online"))

        laptop_blob = codec.decode_blob(laptop.cache.load(laptop_session.auth_tag).blob)
        phone_blob = codec.decode_blob(phone.cache.load(phone_session.auth_tag).blob)
        assert laptop_blob[:12] != phone_blob[:12]

    @pytest.mark.asyncio
    async def test_discard_local_changes(self, make_device):
        laptop = make_device("laptop")
        laptop_session = (await laptop.unlock("alice", PASSWORD, create_new=True)).session
        phone = make_device("phone")
        phone_session = (await phone.unlock("alice", PASSWORD)).session
        await phone.execute(phone_session, AddEntry(name="from phone"))

        await laptop.discard_local_changes(laptop_session)
        assert names(laptop_session) == ["from phone"]
        assert laptop_session.counter == 2
        assert laptop_session.dirty is False


class TestReconciliationExhausted:
    """A server that always reports a newer counter never accepts a write."""

    @staticmethod
    def _always_conflict_transport():
        keys = derive_keys("alice", PASSWORD, iterations=1_000)
        state = {"counter": 10, "nonce": bytes(12)}

        def handler(request):
            body = json.loads(request.content)
            state["counter"] += 1
            blob, state["nonce"] = codec.encrypt(
                keys.cipher_key, state["nonce"], Vault()
            )
            if request.url.path != "/vault/sync":
                return httpx.Response(404)
            return httpx.Response(400, json={
                "conflict": True,
                "latestBlob": codec.encode_blob(blob),
                "counter": max(state["counter"], body["counter"] + 1),
            })

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_bounded_attempts_then_exhausted(self, tmp_path):
        settings = ClientSettings(
            server_url="http://vault.test",
            cache_path=tmp_path / "laptop" / "cache.db",
            kdf_iterations=1_000,
            max_commit_attempts=3,
            initial_backoff_sec=0.5,
            backoff_multiplier=2.0,
        )
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        client = SyncClient.from_settings(settings, transport=self._always_conflict_transport())
        device = ReconciliationStateMachine(
            client, LocalCache(settings.cache_path), settings, sleep=fake_sleep
        )
        result = await device.unlock("alice", PASSWORD)
        assert result.ok
        session = result.session

        with pytest.raises(ReconciliationExhausted) as exc_info:
            await device.execute(session, AddEntry(name="never lands"))

        assert exc_info.value.attempts == 3
        assert sleeps == [0.5, 1.0]
        assert session.dirty
        assert device.cache.load(session.auth_tag).dirty
        assert names(session) == ["never lands"]

        await device.discard_local_changes(session)
        assert session.dirty is False
        assert session.entries() == []
        assert device.cache.load(session.auth_tag).dirty is False


# ── Server-issued salts ─────────────────────────────────────────────


class TestServerSaltMode:
    @pytest.mark.asyncio
    async def test_devices_share_server_salt(self, make_device, server_store):
        laptop = make_device("laptop", salt_mode="server")
        created = await laptop.unlock("alice", PASSWORD, create_new=True)
        assert created.ok
        salt = server_store.get_salt("alice")
        assert salt
        assert laptop.cache.load_salt("alice") == salt
        await laptop.execute(created.session, AddEntry(name="mail"))

        phone = make_device("phone", salt_mode="server")
        result = await phone.unlock("alice", PASSWORD)
        assert result.ok
        assert names(result.session) == ["mail"]
        assert result.session.auth_tag == created.session.auth_tag

    @pytest.mark.asyncio
    async def test_username_salt_device_cannot_unlock(self, make_device):
        await make_device("laptop", salt_mode="server").unlock("alice", PASSWORD, create_new=True)
        result = await make_device("phone").unlock("alice", PASSWORD)
        assert result.error == MSG_BAD_CREDENTIALS

    @pytest.mark.asyncio
    async def test_offline_uses_cached_salt(self, make_device, offline_transport):
        await make_device("laptop", salt_mode="server").unlock("alice", PASSWORD, create_new=True)
        offline = make_device("laptop", transport=offline_transport, salt_mode="server")
        result = await offline.unlock("alice", PASSWORD)
        assert result.ok
        assert result.warning == MSG_OFFLINE

    @pytest.mark.asyncio
    async def test_offline_without_cached_salt_fails(self, make_device, offline_transport):
        offline = make_device("phone", transport=offline_transport, salt_mode="server")
        result = await offline.unlock("alice", PASSWORD)
        assert result.error == MSG_NO_COPY
