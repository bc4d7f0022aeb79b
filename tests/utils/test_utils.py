from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import pytest

from kubeweave.config.models import RetryPolicy
from kubeweave.utils.retry import RetryError, retry
from kubeweave.utils.serialize import to_jsonable


def test_retry_recovers_and_reports_attempts():
    seen = []
    calls = {"n": 0}

    @retry(retries=3, delay=0, retry_on=(OSError,), on_retry=lambda a, e: seen.append(a))
    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise OSError("connection refused")
        return "up"

    assert flaky() == "up"
    assert seen == [1, 2]


def test_retry_does_not_catch_other_errors():
    @retry(retries=5, delay=0, retry_on=(OSError,))
    def broken():
        raise ValueError("bad key")

    with pytest.raises(ValueError):
        broken()


def test_retry_reads_limits_from_bound_args():
    class Conn:
        attempts = 2
        tries = 0

        @retry(retries=lambda self: self.attempts, delay=lambda self: 0, retry_on=(OSError,))
        def open(self):
            self.tries += 1
            raise OSError("no route to host")

    c = Conn()
    with pytest.raises(RetryError, match="after 2 attempts"):
        c.open()
    assert c.tries == 2


class Color(Enum):
    RED = "red"


@dataclass
class Thing:
    name: str
    color: Color
    where: Path
    tags: frozenset


def test_to_jsonable_handles_nested_types():
    out = to_jsonable({"thing": Thing("a", Color.RED, Path("/tmp/x"), frozenset({"b", "a"})), "retry": RetryPolicy()})
    assert out == {
        "thing": {"name": "a", "color": "red", "where": "/tmp/x", "tags": ["a", "b"]},
        "retry": {"max_attempts": 1, "delay_seconds": 0.0, "backoff": "fixed", "max_delay_seconds": None},
    }
