"""Storage backend that writes line protocol records to an InfluxDB 2 server."""

from __future__ import annotations

import json
import os
from collections import deque
from collections.abc import Iterable, Mapping
from typing import Any

import requests

from bag2influx.converter import SerializedBagMessage

_ENV_PREFIX = "INFLUXDB_"


class InfluxDBError(RuntimeError):
    """Raised when the InfluxDB server cannot be reached or rejects a request."""


def get_env_or_raise(name: str, env: Mapping[str, str] | None = None) -> str:
    """Return the variable ``name`` from ``env``, raising KeyError if unset."""
    source = os.environ if env is None else env
    value = source.get(name)
    if value is None:
        raise KeyError(f"{name} not set")
    return value


def get_env_or_default(name: str, default: str, env: Mapping[str, str] | None = None) -> str:
    """Return the variable ``name`` from ``env``, or ``default`` if unset."""
    source = os.environ if env is None else env
    value = source.get(name)
    return default if value is None else value


def _payload(message: SerializedBagMessage | bytes | str) -> bytes:
    if isinstance(message, SerializedBagMessage):
        return bytes(message.serialized_data)
    if isinstance(message, str):
        return message.encode("utf-8")
    return bytes(message)


class InfluxDBStorage:
    """Write-only storage that posts serialized messages to an InfluxDB bucket.

    Connection settings come from the environment: ``INFLUXDB_HOST``
    (default ``localhost``), ``INFLUXDB_PORT`` (default ``8086``),
    ``INFLUXDB_TOKEN`` and ``INFLUXDB_ORG`` (both required) and
    ``INFLUXDB_BUCKET`` (default ``rosbag2``).
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.host = get_env_or_default(_ENV_PREFIX + "HOST", "localhost", env)
        self.port = get_env_or_default(_ENV_PREFIX + "PORT", "8086", env)
        self._bearer = get_env_or_raise(_ENV_PREFIX + "TOKEN", env)
        self.org_name = get_env_or_raise(_ENV_PREFIX + "ORG", env)
        self.bucket_name = get_env_or_default(_ENV_PREFIX + "BUCKET", "rosbag2", env)
        self._session = session if session is not None else requests.Session()
        self._topics: dict[Any, Any] = {}
        self._filter: Any = None
        self._seek_timestamp: int | None = None
        self._read_queue: deque[SerializedBagMessage] = deque()

    def base_url(self) -> str:
        """Return the server's base URL."""
        return f"http://{self.host}:{self.port}"

    def _request(
        self,
        method: str,
        path: str,
        content_type: str,
        params: Mapping[str, str] | None = None,
        data: bytes | str | None = None,
    ) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self._bearer}",
            "Content-Type": content_type,
        }
        try:
            response = self._session.request(
                method,
                self.base_url() + path,
                headers=headers,
                params=params,
                data=data,
            )
        except requests.RequestException as exc:
            raise InfluxDBError(str(exc)) from exc
        if not 200 <= response.status_code < 300:
            raise InfluxDBError(response.text)
        return response

    @staticmethod
    def _parse_object(response: requests.Response) -> dict[str, Any]:
        try:
            document = json.loads(response.text)
        except ValueError as exc:
            raise InfluxDBError(response.text) from exc
        if not isinstance(document, dict):
            raise InfluxDBError(response.text)
        return document

    def _write_line_protocol(self, line_protocol: bytes) -> None:
        self._request(
            "POST",
            "/api/v2/write",
            "text/plain",
            params={
                "org": self.org_name,
                "bucket": self.bucket_name,
                "precision": "ms",
            },
            data=line_protocol,
        )

    def write(self, message: SerializedBagMessage | bytes | str) -> None:
        """Write one serialized message."""
        self._write_line_protocol(_payload(message))

    def write_many(self, messages: Iterable[SerializedBagMessage | bytes | str]) -> None:
        """Write several serialized messages in a single request."""
        self._write_line_protocol(b"".join(_payload(message) for message in messages))

    def create_topic(self, topic: Any) -> None:
        """Remember a topic locally; InfluxDB itself needs no registration."""
        self._topics[id(topic)] = topic

    def remove_topic(self, topic: Any) -> None:
        """Forget a topic locally; InfluxDB itself needs no removal."""
        self._topics.pop(id(topic), None)

    def create_bucket_request_body(self, org_id: str) -> str:
        """Return the JSON body that creates this storage's bucket."""
        body = {
            "description": "Topics from ROS 2",
            "name": self.bucket_name,
            "orgID": org_id,
            "schemaType": "implicit",
        }
        return json.dumps(body, separators=(",", ":"))

    def create_bucket(self, org_id: str) -> None:
        """Create the bucket in the organisation ``org_id``."""
        self._request(
            "POST",
            "/api/v2/buckets",
            "application/json",
            data=self.create_bucket_request_body(org_id),
        )

    def get_org_id(self) -> str:
        """Look up the id of the configured organisation."""
        response = self._request(
            "GET", "/api/v2/orgs", "application/json", params={"org": self.org_name}
        )
        document = self._parse_object(response)
        orgs = document.get("orgs")
        if not isinstance(orgs, list) or not orgs:
            raise InfluxDBError(response.text)
        first = orgs[0]
        if not isinstance(first, dict) or "id" not in first:
            raise InfluxDBError(response.text)
        return str(first["id"])

    def bucket_exists(self) -> bool:
        """Return whether the configured bucket already exists."""
        response = self._request(
            "GET", "/api/v2/buckets", "application/json", params={"name": self.bucket_name}
        )
        document = self._parse_object(response)
        buckets = document.get("buckets")
        if not isinstance(buckets, list):
            raise InfluxDBError(response.text)
        return len(buckets) > 0

    def open(self, storage_options: Any = None, io_flag: Any = None) -> None:
        """Make sure the bucket exists, creating it if needed."""
        if not self.bucket_exists():
            self.create_bucket(self.get_org_id())

    def get_bagfile_size(self) -> int:
        return 0

    def get_storage_identifier(self) -> str:
        return "influxdb"

    def get_minimum_split_file_size(self) -> int:
        return 0

    def set_filter(self, storage_filter: Any) -> None:
        """Store the filter; it has no effect on writing."""
        self._filter = storage_filter

    def reset_filter(self) -> None:
        """Drop any stored filter."""
        self._filter = None

    def seek(self, timestamp: int) -> None:
        """Record the requested position; reading is not supported."""
        self._seek_timestamp = timestamp

    def has_next(self) -> bool:
        return True

    def read_next(self) -> SerializedBagMessage | None:
        """Return the next read message; a write-only store yields None."""
        return self._read_queue.popleft() if self._read_queue else None

    def get_all_topics_and_types(self) -> list[Any]:
        return []

    def get_metadata(self) -> dict[str, Any]:
        return {}

    def get_relative_file_path(self) -> str:
        return ""