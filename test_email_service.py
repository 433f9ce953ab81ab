import httpx
import pytest

from conftest import ScriptedTransport, make_payload, rejected
from email_queue.exceptions import PersistenceError, ValidationError
from email_queue.models import EmailStatusEnum
from email_queue.services.circuit_breaker import CircuitBreaker
from email_queue.services.email_service import enqueue_email
from email_queue.services.status import get_status
from email_queue.transport import ResendTransport


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        make_payload(subject=""),
        make_payload(html="   "),
        make_payload(to="not-an-address"),
        {key: value for key, value in make_payload().items() if key != "to"},
        make_payload(priority=9),
        ["not", "an", "object"],
    ],
)
async def test_invalid_requests_persist_nothing(payload, store, transport, config):
    with pytest.raises(ValidationError):
        await enqueue_email(payload, store, transport, config)

    assert store.list_emails() == []
    assert transport.sent == []


@pytest.mark.asyncio
async def test_enqueue_without_transport_stays_pending(store, config):
    result = await enqueue_email(make_payload(), store, None, config)

    assert result.success is True
    assert result.message == "queued"
    assert result.provider_id is None
    status = get_status(store, result.email_id)
    assert status.status == EmailStatusEnum.pending
    assert status.attempts == 0


@pytest.mark.asyncio
async def test_enqueue_delivers_immediately(store, config):
    transport = ScriptedTransport(["re_abc"])

    result = await enqueue_email(make_payload(), store, transport, config)

    assert result.message == "sent"
    assert result.provider_id == "re_abc"
    record = store.get_by_id(result.email_id)
    assert record.status == EmailStatusEnum.sent
    assert record.sent_at is not None
    assert record.attempts == 1
    assert record.provider_id == "re_abc"
    assert [log.status for log in store.list_logs(record.id)] == ["sent"]


@pytest.mark.asyncio
async def test_enqueue_rejection_leaves_record_for_drain(store, config):
    transport = ScriptedTransport([rejected("mailbox full")])

    result = await enqueue_email(make_payload(), store, transport, config)

    assert result.success is True
    assert result.message == "queued"
    record = store.get_by_id(result.email_id)
    assert record.status == EmailStatusEnum.pending
    assert record.attempts == 1
    assert record.last_error == "mailbox full"
    assert record.sent_at is None
    assert store.select_eligible_for_delivery(limit=10)[0].id == record.id


@pytest.mark.asyncio
async def test_enqueue_rejection_with_single_attempt_policy_fails(store, config):
    config.max_attempts = 1
    transport = ScriptedTransport([rejected()])

    result = await enqueue_email(make_payload(), store, transport, config)

    record = store.get_by_id(result.email_id)
    assert record.status == EmailStatusEnum.failed
    assert record.attempts == 1
    assert store.select_eligible_for_delivery(limit=10) == []


@pytest.mark.asyncio
async def test_unexpected_transport_exception_counts_as_attempt(store, config):
    transport = ScriptedTransport([RuntimeError("socket closed")])

    result = await enqueue_email(make_payload(), store, transport, config)

    record = store.get_by_id(result.email_id)
    assert result.message == "queued"
    assert record.status == EmailStatusEnum.pending
    assert record.attempts == 1
    assert record.last_error == "socket closed"


@pytest.mark.asyncio
async def test_unavailable_transport_does_not_count_attempt(store, config):
    circuit = CircuitBreaker(failure_threshold=1, recovery_time=60)
    circuit.record_failure()
    transport = ScriptedTransport(circuit=circuit)

    result = await enqueue_email(make_payload(), store, transport, config)

    record = store.get_by_id(result.email_id)
    assert result.message == "queued"
    assert record.status == EmailStatusEnum.pending
    assert record.attempts == 0
    assert transport.sent == []


@pytest.mark.asyncio
async def test_refused_api_key_is_not_counted_as_an_attempt(store, config):
    client = httpx.AsyncClient(
        base_url="https://api.resend.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"message": "API key is invalid"})),
    )
    transport = ResendTransport(api_key="re_revoked", client=client)

    result = await enqueue_email(make_payload(), store, transport, config)

    record = store.get_by_id(result.email_id)
    assert result.message == "queued"
    assert (record.status, record.attempts) == (EmailStatusEnum.pending, 0)
    assert record.last_error is None
    assert store.list_logs(record.id) == []
    await transport.aclose()


@pytest.mark.asyncio
async def test_enqueue_applies_defaults_and_keeps_template_data(store, config):
    result = await enqueue_email(
        make_payload(text="Plain body", templateType="membership_confirmation", templateData={"memberNumber": "G-42"}),
        store,
        None,
        config,
    )

    record = store.get_by_id(result.email_id)
    assert record.from_email == "noreply@example.org"
    assert record.from_name == "Federation"
    assert record.priority == 2
    assert record.max_attempts == 3
    assert record.text_content == "Plain body"
    assert record.template_type == "membership_confirmation"
    assert record.template_data == {"memberNumber": "G-42"}


@pytest.mark.asyncio
async def test_enqueue_honours_caller_sender_and_priority(store, config):
    payload = make_payload(**{"from": "events@example.org", "fromName": "Events", "replyTo": "desk@example.org", "priority": 1})

    result = await enqueue_email(payload, store, None, config)

    record = store.get_by_id(result.email_id)
    assert record.from_email == "events@example.org"
    assert record.from_name == "Events"
    assert record.reply_to == "desk@example.org"
    assert record.priority == 1


@pytest.mark.asyncio
async def test_identical_requests_create_separate_records(store, config):
    first = await enqueue_email(make_payload(), store, None, config)
    second = await enqueue_email(make_payload(), store, None, config)

    assert first.email_id != second.email_id
    assert len(store.list_emails()) == 2


@pytest.mark.asyncio
async def test_insert_failure_propagates(store, transport, config, monkeypatch):
    def broken_insert(fields):
        raise PersistenceError("database is read-only")

    monkeypatch.setattr(store, "insert", broken_insert)

    with pytest.raises(PersistenceError):
        await enqueue_email(make_payload(), store, transport, config)
    assert transport.sent == []


@pytest.mark.asyncio
async def test_storage_failure_after_insert_still_queues(store, config, monkeypatch):
    transport = ScriptedTransport()

    def broken_update(*args, **kwargs):
        raise PersistenceError("connection reset")

    monkeypatch.setattr(store, "update_fields", broken_update)

    result = await enqueue_email(make_payload(), store, transport, config)

    assert result.message == "queued"
    assert store.get_by_id(result.email_id).status == EmailStatusEnum.pending
