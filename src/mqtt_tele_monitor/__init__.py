"""Classify and decode MQTT broker statistics and Tasmota telemetry."""

__version__ = "0.1.0"
