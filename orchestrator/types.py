import math

import click


class Seconds(click.ParamType):
    """A finite, non-negative duration in seconds."""

    name = "seconds"

    def __init__(self, min_value: float = 0):
        self.min_value = min_value

    def convert(self, value, param, ctx):
        if isinstance(value, float):
            return value
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            self.fail(f"{value!r} is not a number of seconds", param, ctx)
        if not math.isfinite(seconds):
            self.fail(f"{value} is not a finite duration", param, ctx)
        if seconds < self.min_value:
            self.fail(f"{value} is less than the minimum of {self.min_value} seconds", param, ctx)
        return seconds
