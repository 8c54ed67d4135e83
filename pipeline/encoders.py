"""
Wire encoders for sensor records.

Avro through a Confluent schema registry when one is configured, plain JSON
otherwise.
"""

import json
import logging
from typing import Dict, Optional

from confluent_kafka.schema_registry import (
    Schema,
    SchemaRegistryClient,
    record_subject_name_strategy,
)
from confluent_kafka.schema_registry.avro import AvroSerializer
from confluent_kafka.serialization import MessageField, SerializationContext

logger = logging.getLogger(__name__)

SENSOR_SCHEMA = {
    'type': 'record',
    'name': 'SensorData',
    'namespace': 'com.example',
    'fields': [
        {'name': 'sensorId', 'type': 'string'},
        {'name': 'timestamp', 'type': 'long'},
        {'name': 'temperature', 'type': 'float'},
        {'name': 'humidity', 'type': 'float'},
        {'name': 'battery', 'type': 'float'},
        {'name': 'airQuality', 'type': 'float'},
    ],
}
SENSOR_SCHEMA_STR = json.dumps(SENSOR_SCHEMA)
SENSOR_SCHEMA_SUBJECT = f"{SENSOR_SCHEMA['namespace']}.{SENSOR_SCHEMA['name']}"


class JsonEncoder:
    """UTF-8 JSON payloads, no registry involved."""

    def register(self) -> Optional[int]:
        return None

    def encode(self, record: Dict) -> bytes:
        return json.dumps(record).encode('utf-8')


class AvroEncoder:
    """Avro payloads in the Confluent wire format (magic byte + schema id)."""

    def __init__(self, registry_client: SchemaRegistryClient, topic: str):
        self.registry_client = registry_client
        self.topic = topic
        self.schema_id: Optional[int] = None
        self.serializer = AvroSerializer(
            registry_client,
            SENSOR_SCHEMA_STR,
            conf={'subject.name.strategy': record_subject_name_strategy},
        )

    def register(self) -> int:
        """Register the sensor schema under its record name and return its id."""
        self.schema_id = self.registry_client.register_schema(
            SENSOR_SCHEMA_SUBJECT, Schema(SENSOR_SCHEMA_STR, schema_type='AVRO')
        )
        logger.info(f"Schema registered with ID: {self.schema_id}")
        return self.schema_id

    def encode(self, record: Dict) -> bytes:
        return self.serializer(record, SerializationContext(self.topic, MessageField.VALUE))


def build_encoder(
    topic: str,
    registry_url: Optional[str] = None,
    registry_key: Optional[str] = None,
    registry_secret: Optional[str] = None,
):
    """Avro when a schema registry URL is configured, JSON otherwise."""
    if not registry_url:
        logger.info("No schema registry configured, encoding records as JSON")
        return JsonEncoder()

    conf = {'url': registry_url}
    if registry_key and registry_secret:
        conf['basic.auth.user.info'] = f"{registry_key}:{registry_secret}"
    logger.info(f"Encoding records as Avro via schema registry: {registry_url}")
    return AvroEncoder(SchemaRegistryClient(conf), topic)
