import json

import pytest
import requests
import responses
from responses import matchers

from bag2influx.converter import SerializedBagMessage
from bag2influx.storage import (
    InfluxDBError,
    InfluxDBStorage,
    get_env_or_default,
    get_env_or_raise,
)

ENV = {"INFLUXDB_TOKEN": "token", "INFLUXDB_ORG": "myorg"}
BASE = "http://localhost:8086"


@pytest.fixture
def rsps():
    with responses.RequestsMock() as mock:
        yield mock


@pytest.fixture
def storage():
    return InfluxDBStorage(env=ENV)


def test_get_env_or_raise_returns_value():
    assert get_env_or_raise("A", {"A": "x"}) == "x"


def test_get_env_or_raise_missing():
    with pytest.raises(KeyError, match="A not set"):
        get_env_or_raise("A", {})


def test_get_env_or_default():
    assert get_env_or_default("A", "dflt", {}) == "dflt"
    assert get_env_or_default("A", "dflt", {"A": "v"}) == "v"


def test_defaults(storage):
    assert storage.base_url() == BASE
    assert storage.bucket_name == "rosbag2"
    assert storage.org_name == "myorg"


def test_custom_host_and_port():
    env = dict(ENV, INFLUXDB_HOST="db.example.com", INFLUXDB_PORT="9999", INFLUXDB_BUCKET="b")
    s = InfluxDBStorage(env=env)
    assert s.base_url() == "http://db.example.com:9999"
    assert s.bucket_name == "b"


@pytest.mark.parametrize("missing", ["INFLUXDB_TOKEN", "INFLUXDB_ORG"])
def test_required_env(missing):
    env = {k: v for k, v in ENV.items() if k != missing}
    with pytest.raises(KeyError, match=missing):
        InfluxDBStorage(env=env)


def test_write_posts_line_protocol(rsps, storage):
    rsps.post(
        BASE + "/api/v2/write",
        match=[
            matchers.query_param_matcher({"org": "myorg", "bucket": "rosbag2", "precision": "ms"}),
            matchers.header_matcher(
                {"Authorization": "Bearer token", "Content-Type": "text/plain"}
            ),
        ],
        status=204,
    )
    result = storage.write(SerializedBagMessage(b"t,a=b x=1i 5\n"))
    assert result is None
    assert len(rsps.calls) == 1
    assert rsps.calls[0].request.body == b"t,a=b x=1i 5\n"


def test_write_many_concatenates(rsps, storage):
    rsps.post(BASE + "/api/v2/write", status=204)
    result = storage.write_many(
        [SerializedBagMessage(b"a x=1i 1\n"), SerializedBagMessage(b"b y=2i 2\n")]
    )
    assert result is None
    assert len(rsps.calls) == 1
    assert rsps.calls[0].request.body == b"a x=1i 1\nb y=2i 2\n"


def test_write_error_status(rsps, storage):
    rsps.post(BASE + "/api/v2/write", status=400, body="bad line")
    with pytest.raises(InfluxDBError, match="bad line"):
        storage.write(b"x")


def test_write_connection_error(rsps, storage):
    rsps.post(BASE + "/api/v2/write", body=requests.ConnectionError("refused"))
    with pytest.raises(InfluxDBError, match="refused"):
        storage.write(b"x")


def test_create_bucket_request_body(storage):
    body = storage.create_bucket_request_body("org1")
    assert json.loads(body) == {
        "description": "Topics from ROS 2",
        "name": "rosbag2",
        "orgID": "org1",
        "schemaType": "implicit",
    }
    assert list(json.loads(body)) == ["description", "name", "orgID", "schemaType"]


def test_create_bucket(rsps, storage):
    rsps.post(
        BASE + "/api/v2/buckets",
        match=[matchers.header_matcher({"Content-Type": "application/json"})],
        status=201,
    )
    result = storage.create_bucket("org1")
    assert result is None
    sent = json.loads(rsps.calls[0].request.body)
    assert sent == json.loads(storage.create_bucket_request_body("org1"))
    assert sent["orgID"] == "org1"


def test_create_bucket_error_status(rsps, storage):
    rsps.post(BASE + "/api/v2/buckets", status=422, body="conflict")
    with pytest.raises(InfluxDBError, match="conflict"):
        storage.create_bucket("org1")


def test_get_org_id(rsps, storage):
    rsps.get(
        BASE + "/api/v2/orgs",
        match=[matchers.query_param_matcher({"org": "myorg"})],
        json={"orgs": [{"id": "abc"}, {"id": "def"}]},
    )
    assert storage.get_org_id() == "abc"


@pytest.mark.parametrize(
    "payload",
    [{}, {"orgs": []}, {"orgs": [{"name": "myorg"}]}],
)
def test_get_org_id_bad_documents(rsps, storage, payload):
    rsps.get(BASE + "/api/v2/orgs", json=payload)
    with pytest.raises(InfluxDBError):
        storage.get_org_id()


def test_get_org_id_not_json(rsps, storage):
    rsps.get(BASE + "/api/v2/orgs", body="oops")
    with pytest.raises(InfluxDBError, match="oops"):
        storage.get_org_id()


@pytest.mark.parametrize("buckets, expected", [([], False), ([{"name": "rosbag2"}], True)])
def test_bucket_exists(rsps, storage, buckets, expected):
    rsps.get(
        BASE + "/api/v2/buckets",
        match=[matchers.query_param_matcher({"name": "rosbag2"})],
        json={"buckets": buckets},
    )
    assert storage.bucket_exists() is expected


def test_bucket_exists_missing_key(rsps, storage):
    rsps.get(BASE + "/api/v2/buckets", json={"other": 1})
    with pytest.raises(InfluxDBError):
        storage.bucket_exists()


def test_bucket_exists_error_status(rsps, storage):
    rsps.get(BASE + "/api/v2/buckets", status=401, body="unauthorized")
    with pytest.raises(InfluxDBError, match="unauthorized"):
        storage.bucket_exists()


def test_open_existing_bucket(rsps, storage):
    rsps.get(BASE + "/api/v2/buckets", json={"buckets": [{"name": "rosbag2"}]})
    result = storage.open()
    assert result is None
    assert [call.request.method for call in rsps.calls] == ["GET"]


def test_open_creates_bucket(rsps, storage):
    rsps.get(BASE + "/api/v2/buckets", json={"buckets": []})
    rsps.get(BASE + "/api/v2/orgs", json={"orgs": [{"id": "abc"}]})
    rsps.post(BASE + "/api/v2/buckets", status=201)
    result = storage.open(None, None)
    assert result is None
    assert [call.request.method for call in rsps.calls] == ["GET", "GET", "POST"]
    assert json.loads(rsps.calls[2].request.body)["orgID"] == "abc"


def test_open_propagates_errors(rsps, storage):
    rsps.get(BASE + "/api/v2/buckets", status=500, body="server down")
    with pytest.raises(InfluxDBError, match="server down"):
        storage.open()


def test_trivial_interface(storage):
    assert storage.get_storage_identifier() == "influxdb"
    assert storage.get_bagfile_size() == 0
    assert storage.get_minimum_split_file_size() == 0
    assert storage.has_next() is True
    assert storage.read_next() is None
    assert storage.get_all_topics_and_types() == []
    assert storage.get_metadata() == {}
    assert storage.get_relative_file_path() == ""


def test_noop_methods_send_nothing(rsps, storage):
    results = [
        storage.create_topic("t"),
        storage.remove_topic("t"),
        storage.set_filter(None),
        storage.reset_filter(),
        storage.seek(0),
    ]
    assert results == [None, None, None, None, None]
    assert len(rsps.calls) == 0