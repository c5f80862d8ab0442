import pytest

from servicekit.eda.broker import (
    Config,
    MemoryBroker,
    Message,
    Publisher,
    Subscriber,
    SubscribeConfig,
    UnknownBackendError,
    new,
    register,
    registered_names,
    unregister,
)


class _RecordingPublisher(Publisher):
    def __init__(self):
        self.msgs = []

    def publish(self, *msgs):
        self.msgs.extend(msgs)

    def close(self):
        pass


def test_message_fields():
    m = Message(
        id="msg-1",
        topic="orders.created",
        key="order-123",
        payload=b'{"id":"123"}',
        headers={"X-Source": "test"},
    )
    assert m.id == "msg-1"
    assert m.topic == "orders.created"
    assert m.key == "order-123"
    assert m.payload.decode() == '{"id":"123"}'
    assert m.headers["X-Source"] == "test"


def test_message_defaults_have_independent_headers():
    a = Message()
    b = Message()
    a.headers["x"] = "1"
    assert b.headers == {}
    assert a.key == "" and a.payload == b""


def test_subscribe_config_defaults():
    cfg = SubscribeConfig()
    assert cfg.concurrency == 1
    assert cfg.max_retries == 3
    assert cfg.ack_timeout == 30.0
    assert cfg.group == ""


def test_subscribe_config_all_options():
    cfg = SubscribeConfig(group="workers", concurrency=5, max_retries=10, ack_timeout=60.0)
    assert cfg.group == "workers"
    assert cfg.concurrency == 5
    assert cfg.max_retries == 10
    assert cfg.ack_timeout == 60.0


def test_new_unknown_backend():
    with pytest.raises(UnknownBackendError) as info:
        new(Config(backend="this-backend-does-not-exist"))
    assert "unknown backend" in str(info.value)
    assert "registered" in str(info.value)


def test_new_memory_backend():
    pub, sub = new(Config(backend="memory"))
    assert isinstance(pub, MemoryBroker)
    assert pub is sub


def test_registered_names_include_memory_sorted():
    names = registered_names()
    assert "memory" in names
    assert names == sorted(names)


def test_register_adds_backend():
    fake = _RecordingPublisher()
    register("test-fake-backend", lambda _cfg: (fake, None))
    try:
        pub, sub = new(Config(backend="test-fake-backend"))
        assert pub is fake
        assert sub is None
    finally:
        unregister("test-fake-backend")
    assert "test-fake-backend" not in registered_names()


def test_publisher_is_abstract():
    with pytest.raises(TypeError):
        Publisher()
    with pytest.raises(TypeError):
        Subscriber()


def test_memory_publish_to_one_subscriber():
    pub, sub = new(Config(backend="memory"))
    received = []
    sub.subscribe("topic.t", received.append)
    pub.publish(Message(id="m1", topic="topic.t", payload=b"hi"))
    assert len(received) == 1
    assert received[0].id == "m1"
    assert received[0].payload == b"hi"


def test_memory_other_topic_not_delivered():
    pub, sub = new(Config(backend="memory"))
    received = []
    sub.subscribe("topic.a", received.append)
    pub.publish(Message(id="m1", topic="topic.b"))
    assert received == []


def test_memory_consumer_group_dedup():
    pub, sub = new(Config(backend="memory"))
    calls = []
    sub.subscribe("topic.cg", calls.append, SubscribeConfig(group="workers"))
    sub.subscribe("topic.cg", calls.append, SubscribeConfig(group="workers"))
    pub.publish(Message(id="m1", topic="topic.cg"))
    assert len(calls) == 1


def test_memory_fanout_across_groups():
    pub, sub = new(Config(backend="memory"))
    calls = []
    sub.subscribe("topic.fan", calls.append, SubscribeConfig(group="group-a"))
    sub.subscribe("topic.fan", calls.append, SubscribeConfig(group="group-b"))
    pub.publish(Message(id="m1", topic="topic.fan"))
    assert len(calls) == 2


def test_memory_no_group_fanout():
    pub, sub = new(Config(backend="memory"))
    calls = []
    sub.subscribe("topic.nofan", calls.append)
    sub.subscribe("topic.nofan", calls.append)
    pub.publish(Message(id="m1", topic="topic.nofan"))
    assert len(calls) == 2


def test_memory_handler_errors_ignored():
    broker = MemoryBroker()
    calls = []

    def failing(msg):
        calls.append("fail")
        raise RuntimeError("boom")

    broker.subscribe("t", failing)
    broker.subscribe("t", lambda msg: calls.append("ok"))
    broker.publish(Message(id="m1", topic="t"))
    assert calls == ["fail", "ok"]


def test_memory_publishes_multiple_messages_in_order():
    broker = MemoryBroker()
    ids = []
    broker.subscribe("t", lambda msg: ids.append(msg.id))
    broker.publish(Message(id="1", topic="t"), Message(id="2", topic="t"))
    assert ids == ["1", "2"]


def test_memory_group_dedup_is_per_message():
    broker = MemoryBroker()
    calls = []
    broker.subscribe("t", lambda msg: calls.append(("a", msg.id)), SubscribeConfig(group="g"))
    broker.subscribe("t", lambda msg: calls.append(("b", msg.id)), SubscribeConfig(group="g"))
    broker.publish(Message(id="1", topic="t"), Message(id="2", topic="t"))
    assert calls == [("a", "1"), ("a", "2")]


def test_memory_close_is_noop():
    broker = MemoryBroker()
    received = []
    broker.subscribe("t", received.append)
    broker.close()
    broker.publish(Message(id="m1", topic="t"))
    assert [m.id for m in received] == ["m1"]