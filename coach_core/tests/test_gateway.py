import pytest

from coach_core.domain.exceptions import ConfigurationError, ProviderOverloadedError, ValidationError
from coach_core.domain.models import Attachment, Message, PendingOperation, ProviderConfig, ProviderReply, Session
from coach_core.infrastructure.retry import RetryPolicy
from coach_core.infrastructure.storage.blob_store import SqliteBlobStore
from coach_core.providers.gateway import ProviderGateway


class FakeHandle:
    def __init__(self, system_instruction, history, replies):
        self.system_instruction = system_instruction
        self.history = list(history)
        self.sent = []
        self._replies = replies

    async def send(self, text, attachments=()):
        self.sent.append((text, tuple(attachments)))
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ProviderReply(reply_text=reply, usage_units=10, provider="fake", model="coach-chat")


class StatefulClient:
    name = "fake-stateful"
    supports_sessions = True

    def __init__(self, replies):
        self.replies = replies
        self.handles = []

    def open_session(self, system_instruction, history=()):
        handle = FakeHandle(system_instruction, history, self.replies)
        self.handles.append(handle)
        return handle

    async def complete(self, system_instruction, turns):
        raise NotImplementedError


class StatelessClient:
    name = "fake-stateless"
    supports_sessions = False

    def __init__(self, replies):
        self.replies = replies
        self.calls = []

    def open_session(self, system_instruction, history=()):
        raise NotImplementedError

    async def complete(self, system_instruction, turns):
        self.calls.append((system_instruction, list(turns)))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ProviderReply(reply_text=reply, usage_units=5, provider="fake", model="coach-chat")


CONFIG = ProviderConfig(provider_id="gemini", api_key="test-key")
FAST = RetryPolicy(max_attempts=3, base_delay_ms=0)


@pytest.mark.asyncio
async def test_rejects_empty_turn():
    gateway = ProviderGateway(CONFIG, client_factory=lambda cfg: StatefulClient([]))
    with pytest.raises(ValidationError):
        await gateway.send(Session.new(), "   ", [])


@pytest.mark.asyncio
async def test_missing_credential_fails_fast_without_provider():
    created = []

    def factory(cfg):
        created.append(cfg)
        return StatefulClient(["never"])

    gateway = ProviderGateway(ProviderConfig(provider_id="openai", api_key=""), client_factory=factory)
    with pytest.raises(ConfigurationError):
        await gateway.send(Session.new(), "hi")
    assert created == []


@pytest.mark.asyncio
async def test_stateful_handle_is_reused_per_session():
    client = StatefulClient(["one", "two", "three"])
    usage = []
    gateway = ProviderGateway(CONFIG, retry_policy=FAST, on_usage=usage.append, client_factory=lambda cfg: client)
    a, b = Session.new(), Session.new()
    a.system_instruction = "coach"

    assert (await gateway.send(a, "first")).reply_text == "one"
    assert (await gateway.send(a, "second")).reply_text == "two"
    assert (await gateway.send(b, "other")).reply_text == "three"

    assert len(client.handles) == 2
    assert client.handles[0].system_instruction == "coach"
    assert [t for t, _ in client.handles[0].sent] == ["first", "second"]
    assert usage == [10, 10, 10]

    gateway.release(a.id)
    assert not gateway.has_handle(a.id)
    assert gateway.has_handle(b.id)


@pytest.mark.asyncio
async def test_new_handle_is_seeded_with_visible_history(tmp_path):
    blobs = SqliteBlobStore(root=tmp_path)
    key = await blobs.put(Attachment("image/png", b"chart"))
    client = StatefulClient(["resumed"])
    gateway = ProviderGateway(CONFIG, blob_store=blobs, retry_policy=FAST, client_factory=lambda cfg: client)

    session = Session.new(goal="build_plan")
    session.append(Message.create("assistant", "guidance"))
    session.append(Message.create("user", "", (key, "img_missing")))
    session.append(Message.create("assistant", "Error: boom", kind="error"))
    current = session.append(Message.create("user", "continue"))
    session.pending_operation = PendingOperation(token="op", user_message_id=current.id)

    await gateway.send(session, "continue")

    history = client.handles[0].history
    assert [(t.role, t.text) for t in history] == [("assistant", "guidance"), ("user", "")]
    assert history[1].attachments == (Attachment("image/png", b"chart"),)


@pytest.mark.asyncio
async def test_stateless_rebuilds_full_history_each_call():
    client = StatelessClient(["a1", "a2"])
    gateway = ProviderGateway(
        ProviderConfig(provider_id="openai", api_key="k"),
        retry_policy=FAST,
        client_factory=lambda cfg: client,
    )
    session = Session.new()
    session.system_instruction = "sys"
    image = Attachment("image/jpeg", b"jpg")

    first = session.append(Message.create("user", "hello"))
    session.pending_operation = PendingOperation(token="op1", user_message_id=first.id)
    await gateway.send(session, "hello", [image])
    session.append(Message.create("assistant", "a1"))

    second = session.append(Message.create("user", "again"))
    session.pending_operation = PendingOperation(token="op2", user_message_id=second.id)
    await gateway.send(session, "again")

    assert client.calls[0][0] == "sys"
    assert [(t.role, t.text) for t in client.calls[0][1]] == [("user", "hello")]
    assert client.calls[0][1][0].attachments == (image,)
    assert [(t.role, t.text) for t in client.calls[1][1]] == [("user", "hello"), ("assistant", "a1"), ("user", "again")]


@pytest.mark.asyncio
async def test_transient_errors_are_retried_and_async_usage_reported():
    client = StatelessClient([ProviderOverloadedError(code="PROVIDER_UNAVAILABLE", message="503"), "ok"])
    usage = []

    async def on_usage(units):
        usage.append(units)

    retries = []
    gateway = ProviderGateway(
        ProviderConfig(provider_id="openai", api_key="k"),
        retry_policy=FAST,
        on_usage=on_usage,
        on_retry=lambda attempt, delay, err: retries.append(attempt),
        client_factory=lambda cfg: client,
    )
    reply = await gateway.send(Session.new(), "hi")
    assert reply.reply_text == "ok"
    assert retries == [1]
    assert usage == [5]


@pytest.mark.asyncio
async def test_failing_usage_callback_does_not_fail_the_call():
    def on_usage(units):
        raise RuntimeError("ledger down")

    gateway = ProviderGateway(
        ProviderConfig(provider_id="openai", api_key="k"),
        retry_policy=FAST,
        on_usage=on_usage,
        client_factory=lambda cfg: StatelessClient(["ok"]),
    )
    assert (await gateway.send(Session.new(), "hi")).reply_text == "ok"


@pytest.mark.asyncio
async def test_reconfigure_drops_client_and_handles():
    clients = []

    def factory(cfg):
        clients.append(StatefulClient(["x", "y"]))
        return clients[-1]

    gateway = ProviderGateway(CONFIG, retry_policy=FAST, client_factory=factory)
    session = Session.new()
    await gateway.send(session, "hi")
    gateway.reconfigure(ProviderConfig(provider_id="gemini", api_key="other-key"))
    assert not gateway.has_handle(session.id)
    await gateway.send(session, "hi")
    assert len(clients) == 2
    assert gateway.config.api_key == "other-key"
