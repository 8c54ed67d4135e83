import json
import random
import struct
import sys
from unittest import mock

import pytest
from confluent_kafka.schema_registry.error import SchemaRegistryError
from confluent_kafka.serialization import SerializationError
from kafka.errors import KafkaError

from iot_simulator.iot_simulator import SimulationContext, SimulationEngine
from pipeline import encoders, kafka_producer
from pipeline.encoders import SENSOR_SCHEMA_SUBJECT, AvroEncoder, JsonEncoder, build_encoder
from pipeline.kafka_producer import (
    IoTKafkaProducer,
    ProducerSettings,
    build_record,
    parse_args,
    to_float32,
)
from tests.conftest import ScriptedRandom

NOW = 1_700_000_000_000


class FakeFuture:
    def __init__(self):
        self.errbacks = []

    def add_errback(self, fn):
        self.errbacks.append(fn)
        return self


class FakeKafkaProducer:
    def __init__(self, fail_with=None):
        self.sent = []
        self.futures = []
        self.fail_with = fail_with
        self.flushed = False
        self.closed = False

    def send(self, topic, key=None, value=None):
        if self.fail_with:
            raise self.fail_with
        self.sent.append((topic, key, value))
        future = FakeFuture()
        self.futures.append(future)
        return future

    def flush(self):
        self.flushed = True

    def close(self):
        self.closed = True


class FailingEncoder:
    def register(self):
        return None

    def encode(self, record):
        raise SerializationError("cannot encode record")


def make_producer(draws=None, rng=None, encoder=None, client=None):
    settings = ProducerSettings(topic='sensor-data', interval=0)
    return IoTKafkaProducer(
        settings,
        encoder=encoder or JsonEncoder(),
        producer=client or FakeKafkaProducer(),
        rng=rng or ScriptedRandom(draws or []),
        context=SimulationContext(engine=SimulationEngine(random.Random(5))),
    )


def test_build_record_field_names():
    values = {'temperature': 20.0, 'humidity': 50.0, 'battery': 80.0, 'airQuality': 10.0}
    record = build_record('sensor-1', NOW, values)

    assert list(record) == ['sensorId', 'timestamp', 'temperature', 'humidity', 'battery', 'airQuality']
    assert record['sensorId'] == 'sensor-1'
    assert record['timestamp'] == NOW


class TestTick:
    def test_regular_tick(self):
        producer = make_producer([0.5, 0.5, 0.9])
        record = producer.tick(NOW)

        assert record['sensorId'] == 'sensor-1'
        assert record['timestamp'] == NOW
        assert len(producer.producer.sent) == 1

        topic, key, value = producer.producer.sent[0]
        assert topic == 'sensor-data'
        assert key == 'sensor-1'
        assert json.loads(value) == record
        assert producer.stats['records_sent'] == 1

    def test_picks_sensor_from_fleet(self):
        producer = make_producer([0.5, 0.5, 0.9])
        producer.rng.choice_index = 3

        assert producer.tick(NOW)['sensorId'] == 'sensor-4'
        assert set(producer.context.sensor_states) == {'sensor-4'}

    def test_blank_sensor_id(self):
        producer = make_producer([0.05, 0.5, 0.9])
        record = producer.tick(NOW)

        assert record['sensorId'] == ''
        assert producer.producer.sent[0][1] is None
        # State is still tracked under the real sensor
        assert 'sensor-1' in producer.context.sensor_states

    def test_drifted_timestamp(self):
        producer = make_producer([0.5, 0.05, 0.2, 0.5, 0.9])
        record = producer.tick(NOW)

        assert record['timestamp'] == NOW - 150_000

    def test_forward_drift(self):
        producer = make_producer([0.5, 0.05, 0.7, 0.1, 0.9])

        assert producer.tick(NOW)['timestamp'] == NOW + 30_000

    def test_duplicate_send(self):
        producer = make_producer([0.5, 0.5, 0.01])
        record = producer.tick(NOW)

        sent = producer.producer.sent
        assert len(sent) == 2
        assert sent[0] == sent[1]
        assert json.loads(sent[1][2]) == record
        assert producer.stats['records_sent'] == 1
        assert producer.stats['duplicates_sent'] == 1


class TestSendErrors:
    def test_encoding_error_is_logged_not_raised(self, caplog):
        producer = make_producer([0.5, 0.5, 0.9], encoder=FailingEncoder())

        producer.tick(NOW)

        assert producer.producer.sent == []
        assert producer.stats['errors'] == 1
        assert 'Error encoding message' in caplog.text

    def test_kafka_error_is_logged_not_raised(self):
        client = FakeKafkaProducer(fail_with=KafkaError('broker unavailable'))
        producer = make_producer(client=client)

        assert producer.send_record(build_record('sensor-1', NOW, {
            'temperature': 20.0, 'humidity': 50.0, 'battery': 80.0, 'airQuality': 10.0,
        })) is False
        assert producer.stats['errors'] == 1

    def test_delivery_failure_counted(self):
        producer = make_producer([0.5, 0.5, 0.9])
        producer.tick(NOW)

        for errback in producer.producer.futures[0].errbacks:
            errback(KafkaError('message timed out'))

        assert producer.stats['errors'] == 1


def test_run_flushes_and_closes():
    producer = make_producer(rng=random.Random(11))
    producer.run(duration=0.01)

    assert producer.stats['ticks'] >= 1
    assert producer.producer.flushed
    assert producer.producer.closed


class TestSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('KAFKA_BROKER', 'broker-1:9092,broker-2:9092')
        monkeypatch.setenv('KAFKA_TOPIC', 'telemetry')
        monkeypatch.setenv('KAFKA_USERNAME', 'user')
        monkeypatch.setenv('KAFKA_PASSWORD', 'secret')
        monkeypatch.setenv('TICK_INTERVAL', '0.5')
        monkeypatch.delenv('SCHEMA_REGISTRY_URL', raising=False)

        settings = ProducerSettings.from_env()

        assert settings.topic == 'telemetry'
        assert settings.interval == 0.5
        assert settings.schema_registry_url is None

        config = settings.kafka_config()
        assert config['bootstrap_servers'] == ['broker-1:9092', 'broker-2:9092']
        assert config['security_protocol'] == 'SASL_SSL'
        assert config['sasl_mechanism'] == 'PLAIN'
        assert config['sasl_plain_username'] == 'user'

    def test_plaintext_without_credentials(self):
        config = ProducerSettings().kafka_config()

        assert config['bootstrap_servers'] == ['localhost:9092']
        assert 'security_protocol' not in config


class TestEncoders:
    def test_json_encoder(self):
        record = {'sensorId': 'sensor-1', 'timestamp': NOW}

        assert json.loads(JsonEncoder().encode(record)) == record
        assert JsonEncoder().register() is None

    def test_build_encoder_defaults_to_json(self):
        assert isinstance(build_encoder('sensor-data'), JsonEncoder)

    def test_build_encoder_with_registry(self, monkeypatch):
        registry_cls = mock.MagicMock()
        monkeypatch.setattr(encoders, 'SchemaRegistryClient', registry_cls)
        monkeypatch.setattr(encoders, 'AvroSerializer', mock.MagicMock())

        encoder = build_encoder('sensor-data', 'https://registry.example', 'key', 'secret')

        assert isinstance(encoder, AvroEncoder)
        registry_cls.assert_called_once_with({
            'url': 'https://registry.example',
            'basic.auth.user.info': 'key:secret',
        })

    def test_avro_register_and_encode(self, monkeypatch):
        serializer_cls = mock.MagicMock()
        serializer_cls.return_value.return_value = b'\x00\x00\x00\x00\x07payload'
        monkeypatch.setattr(encoders, 'AvroSerializer', serializer_cls)
        registry = mock.MagicMock()
        registry.register_schema.return_value = 7

        encoder = AvroEncoder(registry, 'sensor-data')

        assert encoder.register() == 7
        subject, schema = registry.register_schema.call_args[0]
        assert subject == SENSOR_SCHEMA_SUBJECT == 'com.example.SensorData'
        assert schema.schema_type == 'AVRO'

        record = {'sensorId': 'sensor-1', 'timestamp': NOW}
        assert encoder.encode(record) == b'\x00\x00\x00\x00\x07payload'
        args = serializer_cls.return_value.call_args[0]
        assert args[0] == record
        assert args[1].topic == 'sensor-data'


def test_build_record_narrows_readings_to_float32():
    values = {'temperature': 21.675, 'humidity': 50.0, 'battery': 80.1, 'airQuality': 10.0}
    record = build_record('sensor-1', NOW, values)

    assert record['temperature'] != 21.675
    assert record['temperature'] == pytest.approx(21.675, abs=1e-5)
    assert record['temperature'] == struct.unpack('f', struct.pack('f', 21.675))[0]
    assert record['humidity'] == 50.0
    assert to_float32(record['battery']) == record['battery']


class TestParseArgs:
    @pytest.fixture(autouse=True)
    def env(self, monkeypatch):
        monkeypatch.setenv('KAFKA_BROKER', 'env-broker:9092')
        monkeypatch.setenv('KAFKA_TOPIC', 'env-topic')
        monkeypatch.setenv('SCHEMA_REGISTRY_URL', 'https://env-registry.example')
        monkeypatch.setenv('TICK_INTERVAL', '2.5')

    def test_environment_supplies_defaults(self):
        settings = parse_args([]).settings

        assert settings.bootstrap_servers == 'env-broker:9092'
        assert settings.topic == 'env-topic'
        assert settings.schema_registry_url == 'https://env-registry.example'
        assert settings.interval == 2.5

    def test_flags_override_environment(self):
        args = parse_args([
            '--kafka-broker', 'cli-broker:9092',
            '--topic', 'cli-topic',
            '--schema-registry-url', 'https://cli-registry.example',
            '--interval', '0.25',
            '--duration', '30',
            '--seed', '9',
        ])

        assert args.settings.bootstrap_servers == 'cli-broker:9092'
        assert args.settings.topic == 'cli-topic'
        assert args.settings.schema_registry_url == 'https://cli-registry.example'
        assert args.settings.interval == 0.25
        assert args.duration == 30.0
        assert args.seed == 9


class RejectingRegistryEncoder(JsonEncoder):
    def register(self):
        raise SchemaRegistryError(401, 40101, 'Unauthorized')


def test_main_closes_producer_when_schema_registration_fails(monkeypatch, caplog):
    client = FakeKafkaProducer()
    monkeypatch.setattr(kafka_producer, 'load_dotenv', lambda: None)
    monkeypatch.setattr(kafka_producer, 'KafkaProducer', lambda **kwargs: client)
    monkeypatch.setattr(kafka_producer, 'build_encoder', lambda *args: RejectingRegistryEncoder())
    monkeypatch.setattr(sys, 'argv', ['iot-kafka-producer', '--seed', '1'])

    with pytest.raises(SystemExit) as excinfo:
        kafka_producer.main()

    assert excinfo.value.code == 1
    assert client.flushed
    assert client.closed
    assert 'Error running producer' in caplog.text
