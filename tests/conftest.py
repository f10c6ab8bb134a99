"""
Brief: Global pytest configuration enforcing per-test 10s timeout.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys

import pytest

# Ensure 'src' is on sys.path so 'lodestar' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture
def zone_config():
    """
    Brief: ZoneConfig for example.com. with one owned record and no nameservers.

    Inputs:
      - None

    Outputs:
      - ZoneConfig: fresh instance per test (its RecordStore is mutable).
    """
    from lodestar.config.config_parser import ZoneConfig
    from lodestar.records import Record, RecordStore

    return ZoneConfig(
        name="example.com.",
        secret="s3cret",
        records=RecordStore({"www": Record(address="10.0.0.1", ttl=300)}),
        nameservers=(),
        host="127.0.0.1",
        port=0,
        nameserver_host="ns1.example.com",
    )


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        # Fallback: no-op on platforms without SIGALRM
        yield
