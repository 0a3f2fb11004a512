"""Convert recorded robot messages to InfluxDB line protocol and write them to InfluxDB."""

__version__ = "0.1.0"
__all__ = ["converter", "storage"]