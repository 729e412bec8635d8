import pytest

from mqttstore.message import (
    Message,
    PayloadFormat,
    UserProperty,
    Version,
    variable_length_size,
)


@pytest.mark.parametrize(
    "length,size",
    [
        (0, 1),
        (127, 1),
        (128, 2),
        (16383, 2),
        (16384, 3),
        (2097151, 3),
        (2097152, 4),
        (268435455, 4),
        (268435456, 0),
    ],
)
def test_variable_length_size(length, size):
    assert variable_length_size(length) == size


def _full_message():
    return Message(
        dup=True,
        qos=1,
        retained=True,
        topic="a/b",
        payload=b"payload",
        packet_id=7,
        content_type="type",
        correlation_data=b"corr",
        message_expiry=10,
        payload_format=PayloadFormat.STRING,
        response_topic="resp",
        subscription_identifier=[1, 2],
        user_properties=[UserProperty(b"1", b"2")],
    )


def test_copy_equals_original():
    msg = _full_message()
    assert msg.copy() == msg


def test_copy_is_deep():
    msg = _full_message()
    dup = msg.copy()
    dup.subscription_identifier.append(9)
    dup.user_properties.append(UserProperty(b"3", b"4"))
    dup.topic = "other"
    assert msg.subscription_identifier == [1, 2]
    assert msg.user_properties == [UserProperty(b"1", b"2")]
    assert msg.topic == "a/b"


def test_total_bytes_worked_example():
    assert Message(topic="a", payload=b"abc").total_bytes(Version.V311) == 8


def test_qos_above_zero_adds_packet_id():
    m0 = Message(topic="t", payload=b"x", qos=0)
    m1 = Message(topic="t", payload=b"x", qos=1)
    assert m1.total_bytes(Version.V311) - m0.total_bytes(Version.V311) == 2


def test_v5_adds_property_length():
    msg = Message(topic="t", payload=b"x")
    assert msg.total_bytes(Version.V5) == msg.total_bytes(Version.V311) + 1


def test_v5_properties_ignored_for_v311():
    plain = Message(topic="t", payload=b"x")
    rich = Message(topic="t", payload=b"x", content_type="ct", message_expiry=3)
    assert rich.total_bytes(Version.V311) == plain.total_bytes(Version.V311)


def test_message_expiry_adds_five():
    plain = Message(topic="t")
    expiring = Message(topic="t", message_expiry=30)
    assert expiring.total_bytes(Version.V5) - plain.total_bytes(Version.V5) == 5


def test_payload_format_string_adds_two():
    plain = Message(topic="t")
    text = Message(topic="t", payload_format=PayloadFormat.STRING)
    assert text.total_bytes(Version.V5) - plain.total_bytes(Version.V5) == 2


def test_header_grows_at_length_boundary():
    shorter = Message(payload=bytes(125))
    longer = Message(payload=bytes(126))
    # one more payload byte and one more length byte
    assert longer.total_bytes(Version.V311) - shorter.total_bytes(Version.V311) == 2