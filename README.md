# bag2influx

`bag2influx` turns recorded robot messages into InfluxDB line protocol and
sends them to an InfluxDB 2 bucket over its HTTP API.

The package has two modules:

- `bag2influx.converter` flattens a message into one line of line protocol.
  The message is described by a `MessageType` made of `Member` fields.
  Nested messages and arrays become dotted field names such as
  `pose.position.x` or `ranges.3`.
- `bag2influx.storage` provides `InfluxDBStorage`. It makes sure the target
  bucket exists and posts line protocol to `/api/v2/write` with millisecond
  precision.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Converting a message

```python
from bag2influx.converter import FieldType, InfluxDBConverter, Member, MessageType

point = MessageType(
    namespace="geometry_msgs::msg",
    name="Point",
    members=[
        Member("x", FieldType.FLOAT64),
        Member("y", FieldType.FLOAT64),
        Member("z", FieldType.FLOAT64),
    ],
)

converter = InfluxDBConverter(env={"PLATFORM_TOKEN": "rig", "MACHINE_TOKEN": "m1"})
serialized = converter.serialize(
    "/goal", point, {"x": 1.5, "y": 2.0, "z": 0.0}, time_stamp=1_700_000_000_000_000_000
)
print(serialized.serialized_data.decode())
# /goal,type=geometry_msgs/msg/Point,platform=rig,machine=m1 x=1.5,y=2,z=0 1700000000000
```

### Tags

Every line is tagged with the message type. In the type tag, the first `::`
of the namespace becomes `/`. A namespace without `::` raises `ValueError`.

Every line is also tagged with the `PLATFORM_TOKEN` and `MACHINE_TOKEN`
values. These come from the environment unless you pass `env`. If either one
is missing, `serialize` raises `KeyError`.

### Messages and fields

A message may be a mapping or any object whose attributes hold the fields.

### Time stamps

The time stamp is given in nanoseconds and written in milliseconds.

### Value formats

- Integers carry an `i` (signed) or `u` (unsigned) suffix. They wrap to the
  width of their type.
- Strings are quoted.
- Floating point values that are not finite are written as `0`.
- Boolean arrays are written as a single field holding their first element.

### Lower-level helpers

These functions produce the same output without the environment lookup:

- `to_line_protocol`
- `serialize_fields`
- `format_value`
- `normalize_message_namespace`

### Array checks

- A fixed-size array with the wrong number of elements raises `ValueError`.
- A bounded sequence of messages longer than its bound raises `ValueError`.

### Reading a line back

`InfluxDBConverter.deserialize(serialized_message, message_type)` reads a
line back into nested dicts and lists. Non-finite floats and boolean arrays
come back as they were written.

## Writing to InfluxDB

`InfluxDBStorage` reads its settings from the environment, or from the
mapping passed as `env`:

| Variable          | Default     |
|-------------------|-------------|
| `INFLUXDB_HOST`   | `localhost` |
| `INFLUXDB_PORT`   | `8086`      |
| `INFLUXDB_TOKEN`  | required    |
| `INFLUXDB_ORG`    | required    |
| `INFLUXDB_BUCKET` | `rosbag2`   |

```python
from bag2influx.storage import InfluxDBStorage

storage = InfluxDBStorage(env={"INFLUXDB_TOKEN": "token", "INFLUXDB_ORG": "lab"})
storage.open()              # creates the bucket if it does not exist yet
storage.write(serialized)   # or storage.write_many([...]) to send a batch
```

### What `write` and `write_many` accept

`write` and `write_many` accept any of these:

- `SerializedBagMessage` objects
- raw `bytes`
- `str`

`write_many` joins the payloads and sends them in a single request.

### Sessions

You may pass your own `requests.Session` as `session`.

### Errors

- A missing required variable raises `KeyError`.
- A failed request raises `InfluxDBError`, a subclass of `RuntimeError`.
- A non-2xx response raises `InfluxDBError`.
- A reply that is not in the expected JSON shape raises `InfluxDBError`.

## What the package does not do

The storage only writes over plain HTTP; it does not speak HTTPS. It does not
read data back from InfluxDB:

- `read_next` returns `None`.
- `get_all_topics_and_types` returns an empty list.
- `get_metadata` returns an empty dict.

`set_filter`, `seek`, `create_topic` and `remove_topic` only keep local
state; they send nothing to the server.

There is no command-line tool. The package is used as a library.