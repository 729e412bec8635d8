# mqttstore

Building blocks for the state an MQTT broker has to remember between packets
and across reconnects:

- `mqttstore.message` — `Message`, the application message with its MQTT v5
  properties, `Message.copy()` and `Message.total_bytes(version)` (the size of
  the PUBLISH packet it would become).
- `mqttstore.queue` — queue elements (`Elem` holding a `Publish` or `Pubrel`),
  their binary encoding, `InitOptions` and the queue errors
  (`QueueClosedError`, `DropQueueFull`, `DropExpired`,
  `DropExceedsMaxPacketSize`).
- `mqttstore.mem_queue` — `MemoryQueue`, an in-memory message queue for one
  client with inflight tracking, packet-id assignment, expiry and a drop policy.
- `mqttstore.sessions` — `Session` and `MemorySessionStore`.
- `mqttstore.redis_session` — `RedisSessionStore`, sessions kept in Redis
  hashes named `session:<client id>`.
- `mqttstore.subscription` — `Subscription`, `Topic`, `IterationOptions`,
  `Stats` and helpers such as `split_topic` and `from_topic`.
- `mqttstore.topic_trie` — `TopicTrie`, matching topic names against filters
  with `+` and `#` wildcards and holding `$share/<name>/<filter>` shared
  subscriptions.
- `mqttstore.unack` — `MemoryUnackStore`, the set of QoS 2 packet ids received
  but not yet released.
- `mqttstore.codec` — the binary encoding of messages and sessions.
- `mqttstore.config` — the broker configuration model, its defaults, YAML
  loading and validation.

## Installation

```
pip install mqttstore
```

`RedisSessionStore` takes a Redis client object that you create yourself; the
package does not install a Redis client library for you.

## Configuration

```python
from mqttstore.config import default_config, parse_config

cfg = default_config()             # the built-in defaults
cfg = parse_config("broker.yml")   # defaults overlaid with a YAML file, then validated
logger = cfg.get_logger(cfg.log)   # a logging.Logger writing text or JSON to stdout
```

`parse_config("")` returns the defaults. An invalid setup raises `ConfigError`,
for example an unknown log level, an API endpoint with a scheme other than
`tcp` or `unix`, a `maximum_qos` above 2 or a `delivery_mode` other than
`overlap` and `onlyonce`. `config_from_dict` builds a `Config` from an already
parsed mapping without validating it.

Plugins can contribute a section under `plugins:` by subclassing
`PluginConfiguration` and calling `register_default_plugin_config(name, cfg)`.

## A client queue

```python
from mqttstore.mem_queue import MemoryQueue
from mqttstore.message import Message, Version
from mqttstore.queue import Elem, InitOptions, Publish

def on_dropped(client_id, message, error):
    print(f"dropped a message for {client_id}: {error}")

queue = MemoryQueue(max_queued_msg=1000, client_id="client-1", drop_handler=on_dropped)
queue.init(InitOptions(clean_start=True, version=Version.V5, read_bytes_limit=1024))
queue.add(Elem(Publish(Message(topic="a/b", payload=b"hi", qos=1))))

inflight = queue.read_inflight(10)   # drain inflight messages first
batch = queue.read([1, 2, 3])        # blocks until a message arrives or close() is called
queue.remove(1)                      # acknowledged
```

`read` gives each QoS 1 and 2 message the next packet id from the list and
removes QoS 0 messages once read; expired messages and messages larger than
`read_bytes_limit` are dropped instead of returned. Calling `read` before
`read_inflight` has drained the inflight messages raises `RuntimeError`, and a
`read` on a closed queue raises `QueueClosedError`. `replace` swaps an inflight
PUBLISH for the `Pubrel` with the same packet id.

When the queue is full, `add` drops: the new message if nothing unread is left;
otherwise an expired unread message, then an unread QoS 0 message; then the new
message if it is QoS 0; then the oldest unread message. Every drop is passed to
the handler with `DropQueueFull`, `DropExpired` or `DropExceedsMaxPacketSize`.

## Sessions

```python
import redis  # any client whose responses are raw bytes
from mqttstore.redis_session import RedisSessionStore
from mqttstore.sessions import MemorySessionStore, Session

store = MemorySessionStore()  # or RedisSessionStore(redis.Redis())
store.set(Session(client_id="client-1", expiry_interval=60))
store.set_session_expiry("client-1", 120)
print(store.get("client-1"))
store.iterate(lambda session: print(session.client_id) or True)
```

## Subscriptions

```python
from mqttstore.subscription import Subscription
from mqttstore.topic_trie import TopicTrie

trie = TopicTrie()
trie.subscribe("client-1", Subscription(topic_filter="sensors/+/temp", qos=1))
trie.subscribe("client-2", Subscription(share_name="workers", topic_filter="sensors/#"))

matched = trie.get_matched_topic_filter("sensors/kitchen/temp")
print(matched["client-1"], matched["client-2"])
trie.unsubscribe("client-1", "sensors/+/temp", "")
```

`get`, `get_topic_matched` and `get_client_subscriptions` in
`mqttstore.subscription` group the results of any store that offers
`iterate(fn, options)`.

## Encoding

```python
import io
from mqttstore.codec import decode_message_from_bytes, decode_session, encode_message, encode_session

data = encode_message(msg)
assert decode_message_from_bytes(data) == msg
session = decode_session(io.BytesIO(encode_session(session)))
```

Malformed input raises `DecodeError`.

## What the package does not do

- It is not a broker: there is no network listener, no packet handling and no
  command to start or reload a server.
- Only sessions can be kept in Redis. Queues, subscriptions and unacknowledged
  packet ids are kept in memory only.
- `TopicTrie` stores and matches subscriptions but has no `iterate` method and
  keeps no subscription counters, so it cannot be passed to the grouping helpers
  in `mqttstore.subscription`, and nothing fills in `Stats`.
- There is no factory that picks a storage back end from the `persistence`
  section of the configuration; the stores are created directly.

## Running the tests

```
pip install "mqttstore[test]"
pytest
```