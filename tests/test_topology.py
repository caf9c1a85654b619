import pytest

from conftest import AMQP_URL
from rabbit_broker import EventKind, ExchangeOptions, QueueOptions, TopologyError
from rabbit_broker.constants import (
    ARG_DEAD_LETTER_EXCHANGE,
    ARG_MESSAGE_TTL,
    STEP_DLQ,
    STEP_DLQ_BIND,
    STEP_DLX,
    STEP_PRIMARY,
)


@pytest.mark.asyncio
async def test_assert_exchange_is_idempotent(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.assert_exchange("orders.events", "topic")
    await broker.assert_exchange("orders.events", "topic")

    assert fake_broker.protocol_calls("declare_exchange") == [
        ("declare_exchange", "orders.events", "topic", True),
        ("declare_exchange", "orders.events", "topic", True),
    ]
    assert fake_broker.exchanges == {"orders.events": ("topic", True)}
    assert broker.channels.opened_count == 1


@pytest.mark.asyncio
async def test_setup_queue_is_idempotent_and_durable_by_default(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.setup_queue("orders")
    await broker.setup_queue("orders")

    assert fake_broker.protocol_calls("declare_queue") == [
        ("declare_queue", "orders", True, {}),
        ("declare_queue", "orders", True, {}),
    ]
    assert fake_broker.queues == {"orders": (True, {})}


@pytest.mark.asyncio
async def test_setup_queue_passes_arguments(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.setup_queue("orders", QueueOptions(durable=False, arguments={ARG_MESSAGE_TTL: 60000}))
    assert fake_broker.queues["orders"] == (False, {ARG_MESSAGE_TTL: 60000})
    assert broker.topology.queue_options("orders").durable is False


@pytest.mark.asyncio
async def test_exchange_type_conflict_raises_and_channel_is_replaced(broker, fake_broker, events):
    await broker.connect(AMQP_URL)
    await broker.assert_exchange("orders.events", "topic")

    with pytest.raises(TopologyError) as excinfo:
        await broker.assert_exchange("orders.events", "direct")
    assert "406" in str(excinfo.value)
    assert excinfo.value.step == "exchange"
    assert events[-1].kind is EventKind.ERROR
    assert events[-1].cause is excinfo.value

    # The broker closed the channel; the next operation gets a fresh one
    await broker.assert_exchange("orders.events", "topic")
    assert broker.channels.opened_count == 2
    assert fake_broker.exchanges == {"orders.events": ("topic", True)}


@pytest.mark.asyncio
async def test_unknown_exchange_type_is_rejected_locally(broker, fake_broker):
    await broker.connect(AMQP_URL)
    with pytest.raises(TopologyError):
        await broker.assert_exchange("orders.events", "x-consistent-hash")
    assert fake_broker.protocol_calls("channel", "declare_exchange") == []


@pytest.mark.asyncio
async def test_non_durable_exchange(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.assert_exchange("scratch", "fanout", ExchangeOptions(durable=False))
    assert fake_broker.exchanges["scratch"] == ("fanout", False)


@pytest.mark.asyncio
async def test_bind_queue(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.assert_exchange("orders.events", "topic")
    await broker.setup_queue("orders")
    await broker.bind_queue("orders", "orders.events", "order.created")

    assert fake_broker.bindings == {("orders", "orders.events", "order.created")}


@pytest.mark.asyncio
async def test_bind_missing_queue_raises_topology_error(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.assert_exchange("orders.events", "topic")

    with pytest.raises(TopologyError) as excinfo:
        await broker.bind_queue("missing", "orders.events", "order.created")
    assert excinfo.value.step == "bind"
    assert fake_broker.bindings == set()


@pytest.mark.asyncio
async def test_dead_letter_setup_order(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.setup_dead_letter_queue("orders", "orders.dlx", "orders.dlq")

    assert fake_broker.protocol_calls("declare_exchange", "declare_queue", "bind") == [
        ("declare_exchange", "orders.dlx", "topic", True),
        ("declare_queue", "orders.dlq", True, {}),
        ("bind", "orders.dlq", "orders.dlx", "#"),
        ("declare_queue", "orders", True, {ARG_DEAD_LETTER_EXCHANGE: "orders.dlx"}),
    ]


@pytest.mark.asyncio
async def test_dead_letter_setup_is_idempotent(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.setup_dead_letter_queue("orders", "orders.dlx", "orders.dlq", "direct", "orders")
    await broker.setup_dead_letter_queue("orders", "orders.dlx", "orders.dlq", "direct", "orders")

    assert fake_broker.exchanges == {"orders.dlx": ("direct", True)}
    assert set(fake_broker.queues) == {"orders", "orders.dlq"}
    assert fake_broker.bindings == {("orders.dlq", "orders.dlx", "orders")}
    assert broker.channels.opened_count == 1


@pytest.mark.asyncio
async def test_dead_letter_setup_merges_queue_arguments(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.setup_dead_letter_queue(
        "orders", "orders.dlx", "orders.dlq", queue_arguments={ARG_MESSAGE_TTL: 30000}
    )
    assert fake_broker.queues["orders"] == (
        True,
        {ARG_MESSAGE_TTL: 30000, ARG_DEAD_LETTER_EXCHANGE: "orders.dlx"},
    )


@pytest.mark.asyncio
async def test_dead_letter_partial_failure_reports_step(broker, fake_broker, events):
    await broker.connect(AMQP_URL)
    fake_broker.fail_on["bind"] = RuntimeError("NOT_ALLOWED")

    with pytest.raises(TopologyError) as excinfo:
        await broker.setup_dead_letter_queue("orders", "orders.dlx", "orders.dlq")

    assert excinfo.value.step == STEP_DLQ_BIND
    assert excinfo.value.completed == (STEP_DLX, STEP_DLQ)
    assert isinstance(excinfo.value.cause, RuntimeError)
    # The primary queue was never declared; nothing is rolled back
    assert "orders" not in fake_broker.queues
    assert "orders.dlx" in fake_broker.exchanges
    assert len([e for e in events if e.kind is EventKind.ERROR]) == 1


@pytest.mark.asyncio
async def test_dead_letter_on_existing_plain_queue_conflicts(broker, fake_broker):
    await broker.connect(AMQP_URL)
    await broker.setup_queue("orders")

    with pytest.raises(TopologyError) as excinfo:
        await broker.setup_dead_letter_queue("orders", "orders.dlx", "orders.dlq")

    assert excinfo.value.step == STEP_PRIMARY
    assert excinfo.value.completed == (STEP_DLX, STEP_DLQ, STEP_DLQ_BIND)
