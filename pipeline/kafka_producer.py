#!/usr/bin/env python3
"""
Kafka producer that runs the sensor fleet simulation and streams readings to Kafka.

Every tick one sensor is picked at random, each of its measurements is advanced
by the simulation engine, and the assembled record is published. To exercise
downstream validation the producer also injects irregularities: blank sensor
ids, drifted timestamps and duplicate sends.

Usage:
    python -m pipeline.kafka_producer
    python -m pipeline.kafka_producer --fleet-config fleet.json --interval 0.5
"""

import argparse
import logging
import math
import os
import random
import struct
import sys
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from confluent_kafka.schema_registry.error import SchemaRegistryError
from confluent_kafka.serialization import SerializationError
from dotenv import load_dotenv
from kafka import KafkaProducer
from kafka.errors import KafkaError

from iot_simulator.iot_simulator import (
    DEFAULT_FLEET,
    FleetConfig,
    SimulationContext,
    SimulationEngine,
    load_fleet_config,
    now_ms,
)
from pipeline.encoders import build_encoder

logger = logging.getLogger(__name__)

MISSING_ID_PROBABILITY = 0.1
DRIFT_PROBABILITY = 0.1
MAX_DRIFT_MS = 5 * 60 * 1000
DUPLICATE_PROBABILITY = 0.05

ENCODE_ERRORS = (SerializationError, SchemaRegistryError, ValueError, TypeError)


@dataclass
class ProducerSettings:
    """Connection settings, read from the environment (and .env)"""
    bootstrap_servers: str = 'localhost:9092'
    client_id: str = 'iot-sensor-producer'
    topic: str = 'sensor-data'
    username: Optional[str] = None
    password: Optional[str] = None
    schema_registry_url: Optional[str] = None
    schema_registry_key: Optional[str] = None
    schema_registry_secret: Optional[str] = None
    interval: float = 1.0

    @classmethod
    def from_env(cls) -> 'ProducerSettings':
        return cls(
            bootstrap_servers=os.getenv('KAFKA_BROKER', cls.bootstrap_servers),
            client_id=os.getenv('KAFKA_CLIENT_ID', cls.client_id),
            topic=os.getenv('KAFKA_TOPIC', cls.topic),
            username=os.getenv('KAFKA_USERNAME'),
            password=os.getenv('KAFKA_PASSWORD'),
            schema_registry_url=os.getenv('SCHEMA_REGISTRY_URL'),
            schema_registry_key=os.getenv('SCHEMA_REGISTRY_API_KEY'),
            schema_registry_secret=os.getenv('SCHEMA_REGISTRY_API_SECRET'),
            interval=float(os.getenv('TICK_INTERVAL', cls.interval)),
        )

    def kafka_config(self) -> Dict:
        """Keyword arguments for KafkaProducer"""
        config = {
            'bootstrap_servers': self.bootstrap_servers.split(','),
            'client_id': self.client_id,
        }
        if self.username and self.password:
            config.update(
                security_protocol='SASL_SSL',
                sasl_mechanism='PLAIN',
                sasl_plain_username=self.username,
                sasl_plain_password=self.password,
            )
        return config


def to_float32(value: float) -> float:
    """Narrow a reading to the precision of the Avro float field."""
    return struct.unpack('f', struct.pack('f', value))[0]


def build_record(sensor_id: str, timestamp: int, values: Dict[str, float]) -> Dict:
    """
    Assemble the published record from one sensor's readings.

    Readings are narrowed to float32 so JSON and Avro payloads carry the same values.
    """
    return {
        'sensorId': sensor_id,
        'timestamp': timestamp,
        'temperature': to_float32(values['temperature']),
        'humidity': to_float32(values['humidity']),
        'battery': to_float32(values['battery']),
        'airQuality': to_float32(values['airQuality']),
    }


class IoTKafkaProducer:
    """Producer that runs the sensor simulation and streams to Kafka."""

    def __init__(
        self,
        settings: ProducerSettings,
        encoder=None,
        fleet_config: Optional[FleetConfig] = None,
        producer=None,
        rng: Optional[random.Random] = None,
        context: Optional[SimulationContext] = None,
    ):
        """
        Initialize Kafka producer.

        Args:
            settings: Broker, topic and registry settings
            encoder: Record encoder (built from settings when omitted)
            fleet_config: Sensor range configuration (default fleet when omitted)
            producer: Kafka client (a KafkaProducer is created when omitted)
            rng: Random source for sensor selection and irregularities
            context: Simulation context (created from fleet_config when omitted)
        """
        self.topic = settings.topic
        self.interval = settings.interval
        self.rng = rng or random.Random()
        self.context = context or SimulationContext(
            fleet_config or DEFAULT_FLEET, SimulationEngine(self.rng)
        )
        self.encoder = encoder or build_encoder(
            settings.topic,
            settings.schema_registry_url,
            settings.schema_registry_key,
            settings.schema_registry_secret,
        )
        self.stats = {
            'ticks': 0,
            'records_sent': 0,
            'duplicates_sent': 0,
            'errors': 0,
        }

        if producer is None:
            producer = KafkaProducer(
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',  # Wait for all replicas to acknowledge
                retries=3,
                linger_ms=10,
                **settings.kafka_config(),
            )
            logger.info(f"Kafka producer initialized: {settings.bootstrap_servers}, topic={self.topic}")
        self.producer = producer

    def register_schema(self):
        """Register the record schema (no-op for JSON encoding)."""
        return self.encoder.register()

    def _on_send_error(self, exc):
        self.stats['errors'] += 1
        logger.error(f"Failed to deliver record: {exc}")

    def send_record(self, record: Dict, duplicate: bool = False) -> bool:
        """
        Encode and send a single record to Kafka.

        Failures are logged and counted so one bad record never stops the loop.

        Returns:
            True if the record was handed to the Kafka client
        """
        label = 'duplicate message' if duplicate else 'message'
        try:
            payload = self.encoder.encode(record)
            future = self.producer.send(
                self.topic,
                key=record['sensorId'] or None,
                value=payload,
            )
            future.add_errback(self._on_send_error)
        except ENCODE_ERRORS as e:
            self.stats['errors'] += 1
            logger.error(f"Error encoding {label}: {e}")
            return False
        except KafkaError as e:
            self.stats['errors'] += 1
            logger.error(f"Kafka error sending {label}: {e}")
            return False

        if duplicate:
            self.stats['duplicates_sent'] += 1
            logger.info(f"Sent duplicate message: {record}")
        else:
            self.stats['records_sent'] += 1
            logger.debug(f"Sent message: {record}")
        return True

    def _drifted(self, now: int) -> int:
        """Current time, drifted by up to five minutes on some ticks."""
        if self.rng.random() >= DRIFT_PROBABILITY:
            return now
        sign = -1 if self.rng.random() < 0.5 else 1
        return now + sign * math.floor(self.rng.random() * MAX_DRIFT_MS)

    def tick(self, now: Optional[int] = None) -> Dict:
        """
        Simulate one sensor and publish its record.

        Args:
            now: Current time in epoch milliseconds (wall clock when omitted)

        Returns:
            The published record
        """
        if now is None:
            now = now_ms()
        self.stats['ticks'] += 1

        sensor_id = self.rng.choice(self.context.sensor_ids)
        include_sensor_id = self.rng.random() >= MISSING_ID_PROBABILITY
        timestamp = self._drifted(now)

        values = self.context.measure(sensor_id, now)
        record = build_record(sensor_id if include_sensor_id else '', timestamp, values)

        self.send_record(record)
        if self.rng.random() < DUPLICATE_PROBABILITY:
            self.send_record(record, duplicate=True)
        return record

    def run(self, duration: Optional[float] = None):
        """
        Tick the simulation and stream to Kafka.

        Args:
            duration: Run duration in seconds (None = run forever)
        """
        logger.info(f"Starting producer with {len(self.context.sensor_ids)} sensors")
        logger.info(f"Tick interval: {self.interval}s")

        start_time = time.time()

        try:
            while True:
                tick_start = time.time()
                self.tick()

                # Log progress
                if self.stats['ticks'] % 10 == 0:
                    elapsed = time.time() - start_time
                    rate = self.stats['records_sent'] / elapsed if elapsed > 0 else 0
                    logger.info(
                        f"Tick {self.stats['ticks']}: {self.stats['records_sent']} records sent "
                        f"({rate:.1f} msg/sec), {self.stats['errors']} errors"
                    )

                if duration and (time.time() - start_time) >= duration:
                    logger.info(f"Duration {duration}s reached, stopping")
                    break

                # Sleep until next tick
                elapsed = time.time() - tick_start
                sleep_time = max(0, self.interval - elapsed)
                if sleep_time > 0:
                    time.sleep(sleep_time)

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.close()

    def close(self):
        """Flush and close the Kafka producer."""
        logger.info("Flushing and closing producer...")
        self.producer.flush()
        self.producer.close()
        for key, value in self.stats.items():
            logger.info(f"  {key}: {value}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    settings = ProducerSettings.from_env()

    parser = argparse.ArgumentParser(
        description='Run the IoT sensor simulation and stream to Kafka'
    )
    parser.add_argument(
        '--kafka-broker',
        default=settings.bootstrap_servers,
        help='Kafka broker addresses (default: $KAFKA_BROKER or localhost:9092)'
    )
    parser.add_argument(
        '--topic',
        default=settings.topic,
        help='Kafka topic to publish to (default: $KAFKA_TOPIC or sensor-data)'
    )
    parser.add_argument(
        '--schema-registry-url',
        default=settings.schema_registry_url,
        help='Schema registry URL; records are sent as JSON when unset'
    )
    parser.add_argument(
        '--fleet-config',
        help='JSON file with sensor range configuration'
    )
    parser.add_argument(
        '--interval',
        type=float,
        default=settings.interval,
        help='Tick interval in seconds (default: $TICK_INTERVAL or 1.0)'
    )
    parser.add_argument(
        '--duration',
        type=float,
        help='Run duration in seconds (default: infinite)'
    )
    parser.add_argument(
        '--seed',
        type=int,
        help='Random seed for reproducibility'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        help='Logging level (default: INFO)'
    )

    args = parser.parse_args(argv)
    settings.bootstrap_servers = args.kafka_broker
    settings.topic = args.topic
    settings.schema_registry_url = args.schema_registry_url
    settings.interval = args.interval
    args.settings = settings
    return args


def main():
    load_dotenv()
    args = parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    fleet_config = None
    if args.fleet_config:
        logger.info(f"Loading fleet config from {args.fleet_config}")
        fleet_config = load_fleet_config(args.fleet_config)

    producer = IoTKafkaProducer(
        args.settings,
        fleet_config=fleet_config,
        rng=random.Random(args.seed),
    )
    try:
        producer.register_schema()
    except Exception as e:
        logger.error(f"Error running producer: {e}")
        producer.close()
        sys.exit(1)
    logger.info("Producer connected. Starting data simulation...")

    producer.run(duration=args.duration)


if __name__ == '__main__':
    main()
