#!/usr/bin/env python3
"""
IoT Sensor Simulator

Simulates telemetry for a small fleet of environment sensors with:
- Stateful per-measurement evolution (bounded random walk inside the normal range)
- One-off transient anomalies (a single reading pushed outside the range)
- Persistent anomalies (locked outside the range for an hour, still drifting)
- Lazily created per-sensor state owned by a simulation context
- A stdout sink for running without a broker
"""

import argparse
import json
import logging
import random
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, NamedTuple, Optional

logger = logging.getLogger(__name__)

MEASUREMENTS = ('temperature', 'humidity', 'battery', 'airQuality')

ANOMALY_PROBABILITY = 0.1
PERSISTENT_CHANCE = 0.03  # Conditional on the anomaly branch (0.3% per tick overall)
PERSISTENT_DURATION_MS = 3600 * 1000
NORMAL_STEP_FRACTION = 0.05  # Of the configured range
ANOMALY_STEP_FRACTION = 0.05  # Of the configured margin
ANOMALY_EDGE_OFFSET = 0.1


@dataclass(frozen=True)
class RangeConfig:
    """Expected normal range and anomaly margin for one measurement"""
    min_value: float
    max_value: float
    margin: float

    def __post_init__(self):
        if not self.min_value < self.max_value:
            raise ValueError(
                f"min ({self.min_value}) must be lower than max ({self.max_value})"
            )
        if self.margin <= 0:
            raise ValueError(f"margin must be positive, got {self.margin}")

    @property
    def midpoint(self) -> float:
        return (self.min_value + self.max_value) / 2

    def clamp(self, value: float) -> float:
        """Clamp value to valid range"""
        return max(self.min_value, min(self.max_value, value))

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> 'RangeConfig':
        return cls(float(data['min']), float(data['max']), float(data['margin']))


@dataclass
class AnomalyRecord:
    """An active persistent anomaly; end_time is in epoch milliseconds"""
    value: float
    end_time: int
    is_below: bool


class Phase(str, Enum):
    NORMAL = 'normal'
    TRANSIENT_EXCURSION = 'transient_excursion'
    PERSISTENT_ANOMALY = 'persistent_anomaly'


@dataclass
class MeasurementState:
    """State for a single measurement of a single sensor"""
    normal: float
    anomaly: Optional[AnomalyRecord] = None
    phase: Phase = Phase.NORMAL


class Reading(NamedTuple):
    value: float
    phase: Phase


SensorState = Dict[str, MeasurementState]
FleetConfig = Dict[str, Dict[str, RangeConfig]]


def _fleet(raw: Dict[str, Dict[str, Dict[str, float]]]) -> FleetConfig:
    return {
        sensor_id: {name: RangeConfig.from_dict(spec) for name, spec in measurements.items()}
        for sensor_id, measurements in raw.items()
    }


# Each sensor has its own expected normal range and margin for anomalies
DEFAULT_FLEET: FleetConfig = _fleet({
    'sensor-1': {
        'temperature': {'min': 18, 'max': 25, 'margin': 5},
        'humidity': {'min': 40, 'max': 60, 'margin': 10},
        'battery': {'min': 50, 'max': 100, 'margin': 20},
        'airQuality': {'min': 0, 'max': 50, 'margin': 20},
    },
    'sensor-2': {
        'temperature': {'min': 10, 'max': 20, 'margin': 5},
        'humidity': {'min': 30, 'max': 50, 'margin': 10},
        'battery': {'min': 60, 'max': 100, 'margin': 20},
        'airQuality': {'min': 5, 'max': 60, 'margin': 20},
    },
    'sensor-3': {
        'temperature': {'min': 20, 'max': 30, 'margin': 5},
        'humidity': {'min': 35, 'max': 65, 'margin': 10},
        'battery': {'min': 40, 'max': 90, 'margin': 20},
        'airQuality': {'min': 10, 'max': 70, 'margin': 20},
    },
    'sensor-4': {
        'temperature': {'min': 15, 'max': 22, 'margin': 5},
        'humidity': {'min': 45, 'max': 70, 'margin': 10},
        'battery': {'min': 30, 'max': 100, 'margin': 20},
        'airQuality': {'min': 0, 'max': 40, 'margin': 20},
    },
    'sensor-5': {
        'temperature': {'min': 16, 'max': 28, 'margin': 5},
        'humidity': {'min': 40, 'max': 65, 'margin': 10},
        'battery': {'min': 50, 'max': 100, 'margin': 20},
        'airQuality': {'min': 15, 'max': 75, 'margin': 20},
    },
})


def load_fleet_config(config_path: str) -> FleetConfig:
    """Load fleet configuration from JSON file."""
    with open(config_path) as f:
        config = json.load(f)

    fleet = _fleet(config.get('sensors', {}))
    if not fleet:
        raise ValueError(f"No sensors defined in {config_path}")
    for sensor_id, measurements in fleet.items():
        missing = [name for name in MEASUREMENTS if name not in measurements]
        if missing:
            raise ValueError(f"Sensor {sensor_id} is missing measurements: {', '.join(missing)}")
    return fleet


class SimulationEngine:
    """
    Computes the next value of a measurement from its state and range.

    The random source only needs a ``random()`` method returning floats in
    [0, 1), so tests can supply scripted sequences.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def init_sensor_state(self, config: Dict[str, RangeConfig]) -> SensorState:
        """Start every measurement at the midpoint of its range"""
        return {
            name: MeasurementState(normal=spec.midpoint)
            for name, spec in config.items()
        }

    def _walk(self, value: float, delta: float) -> float:
        return value + (self.rng.random() * 2 - 1) * delta

    def advance_persistent_anomaly(self, record: AnomalyRecord, config: RangeConfig) -> float:
        """Random-walk an active anomaly, keeping it on its side of the range"""
        new_value = self._walk(record.value, config.margin * ANOMALY_STEP_FRACTION)
        if record.is_below:
            if new_value >= config.min_value:
                new_value = config.min_value - ANOMALY_EDGE_OFFSET
        elif new_value <= config.max_value:
            new_value = config.max_value + ANOMALY_EDGE_OFFSET
        record.value = new_value
        return new_value

    def next_normal(self, old_value: float, config: RangeConfig) -> float:
        """Random-walk the normal value and clamp it to the range"""
        delta = (config.max_value - config.min_value) * NORMAL_STEP_FRACTION
        return config.clamp(self._walk(old_value, delta))

    def transient_anomaly(self, normal_value: float, config: RangeConfig) -> float:
        """One-off excursion between one and two margins away from normal"""
        if self.rng.random() < 0.5:
            return normal_value - config.margin * (1 + self.rng.random())
        return normal_value + config.margin * (1 + self.rng.random())

    def step(self, state: MeasurementState, config: RangeConfig, now: int) -> Reading:
        """
        Advance one measurement by one tick.

        Args:
            state: Measurement state, mutated in place
            config: Range configuration of the measurement
            now: Current time in epoch milliseconds

        Returns:
            The emitted value and the phase that produced it
        """
        if state.anomaly is not None:
            if now < state.anomaly.end_time:
                value = self.advance_persistent_anomaly(state.anomaly, config)
                return self._emit(state, value, Phase.PERSISTENT_ANOMALY)
            # Expired: clear and re-evaluate in the same tick
            state.anomaly = None

        if self.rng.random() < ANOMALY_PROBABILITY:
            anomaly_value = self.transient_anomaly(state.normal, config)
            if self.rng.random() < PERSISTENT_CHANCE:
                state.anomaly = AnomalyRecord(
                    value=anomaly_value,
                    end_time=now + PERSISTENT_DURATION_MS,
                    is_below=anomaly_value < state.normal,
                )
                return self._emit(state, anomaly_value, Phase.PERSISTENT_ANOMALY)
            return self._emit(state, anomaly_value, Phase.TRANSIENT_EXCURSION)

        state.normal = self.next_normal(state.normal, config)
        return self._emit(state, state.normal, Phase.NORMAL)

    def update(self, state: MeasurementState, config: RangeConfig, now: int) -> float:
        return self.step(state, config, now).value

    @staticmethod
    def _emit(state: MeasurementState, value: float, phase: Phase) -> Reading:
        state.phase = phase
        return Reading(value, phase)


class SimulationContext:
    """Owns the per-sensor state of one simulation run"""

    def __init__(self, fleet_config: Optional[FleetConfig] = None,
                 engine: Optional[SimulationEngine] = None):
        self.fleet_config = fleet_config or DEFAULT_FLEET
        self.engine = engine or SimulationEngine()
        self.sensor_states: Dict[str, SensorState] = {}

    @property
    def sensor_ids(self) -> List[str]:
        return list(self.fleet_config)

    def get_sensor_state(self, sensor_id: str) -> SensorState:
        """Return the state of a sensor, initializing it on first use"""
        state = self.sensor_states.get(sensor_id)
        if state is None:
            state = self.engine.init_sensor_state(self.fleet_config[sensor_id])
            self.sensor_states[sensor_id] = state
            logger.debug(f"Initialized state for {sensor_id}")
        return state

    def measure(self, sensor_id: str, now: int) -> Dict[str, float]:
        """Generate one reading for every measurement of a sensor"""
        config = self.fleet_config[sensor_id]
        state = self.get_sensor_state(sensor_id)

        values = {}
        for name, spec in config.items():
            entry = state[name]
            before = entry.anomaly
            values[name] = self.engine.update(entry, spec, now)
            if entry.anomaly is before:
                continue

            # An expiry tick may also start a fresh anomaly
            if before is not None:
                logger.debug(f"[{sensor_id}] Persistent {name} anomaly expired")
            if entry.anomaly is not None:
                side = 'below' if entry.anomaly.is_below else 'above'
                logger.debug(f"[{sensor_id}] Started persistent {name} anomaly {side} range")
        return values


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def main():
    parser = argparse.ArgumentParser(description='IoT Sensor Simulator')
    parser.add_argument('--sensor-id',
                        help='Only simulate this sensor (default: random sensor each tick)')
    parser.add_argument('--fleet-config',
                        help='JSON file with sensor range configuration')
    parser.add_argument('--interval', type=float, default=1.0,
                        help='Measurement interval in seconds')
    parser.add_argument('--duration', type=int, default=0,
                        help='Duration to run in seconds (0 = infinite)')
    parser.add_argument('--seed', type=int,
                        help='Random seed for reproducibility')
    parser.add_argument('--log-level', default='INFO',
                        help='Logging level (default: INFO)')

    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        stream=sys.stderr,
    )

    fleet = load_fleet_config(args.fleet_config) if args.fleet_config else DEFAULT_FLEET
    if args.sensor_id and args.sensor_id not in fleet:
        parser.error(f"Unknown sensor id: {args.sensor_id}. Valid: {list(fleet)}")

    rng = random.Random(args.seed)
    context = SimulationContext(fleet, SimulationEngine(rng))

    logger.info(f"Starting simulator for {len(fleet)} sensors, interval={args.interval}s")

    start_time = time.time()
    tick_count = 0

    try:
        while True:
            sensor_id = args.sensor_id or rng.choice(context.sensor_ids)
            timestamp = now_ms()
            record = {'sensorId': sensor_id, 'timestamp': timestamp}
            record.update(context.measure(sensor_id, timestamp))

            print(json.dumps(record))
            sys.stdout.flush()

            tick_count += 1

            if args.duration > 0 and (time.time() - start_time) >= args.duration:
                break

            time.sleep(args.interval)

    except KeyboardInterrupt:
        logger.info(f"Stopping simulator after {tick_count} measurements")


if __name__ == '__main__':
    main()
