import pytest

from iot_simulator.iot_simulator import RangeConfig


class ScriptedRandom:
    """Random source that replays a fixed sequence of draws."""

    def __init__(self, values, choice_index=0):
        self.values = list(values)
        self.choice_index = choice_index

    def random(self):
        if not self.values:
            raise AssertionError("scripted random source exhausted")
        return self.values.pop(0)

    def choice(self, seq):
        return seq[self.choice_index]


@pytest.fixture
def temperature_config():
    return RangeConfig(min_value=18, max_value=25, margin=5)
