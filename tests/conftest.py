"""Shared test fixtures for flux_mask tests."""

import asyncio
import contextlib
import logging
import os
import signal
import socket
import subprocess
import sys
import tempfile
import time
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from typing import IO, Any

import aiohttp
import pytest
import pytest_asyncio

from flux_mask.config import FluxMaskConfig, merge_config
from flux_mask.core import FluxMaskServer
from flux_mask.keys import KeyPair, SymmetricKey, generate_key_pair
from flux_mask.session import SessionStore

# Enable flux_mask debug logging during tests
logging.getLogger("flux_mask").setLevel(logging.DEBUG)
logging.getLogger("flux_mask").addHandler(logging.StreamHandler())


# === Cryptographic Analysis Helpers ===


def chi_square_byte_uniformity(data: bytes) -> tuple[float, float]:
    """Test if byte distribution is uniform. Returns (chi2, p_value)."""
    import numpy as np
    from scipy import stats  # type: ignore[import-untyped]

    observed = np.bincount(np.frombuffer(data, dtype=np.uint8), minlength=256)
    expected = len(data) / 256
    chi2_result = stats.chisquare(observed, f_exp=[expected] * 256)  # type: ignore[reportUnknownMemberType]
    return float(chi2_result.statistic), float(chi2_result.pvalue)  # type: ignore[reportUnknownMemberType]


# Even truly random data fails chi-square at rate = threshold.
# Multiple trials with a few allowed failures keep the test stable.
CHI_SQUARE_TRIALS: int = 10
CHI_SQUARE_MIN_PASS: int = 8
CHI_SQUARE_P_THRESHOLD: float = 0.01


# === Key Fixtures ===


@pytest.fixture(scope="session")
def key_pair() -> KeyPair:
    """Server RSA key pair.

    Session-scoped: RSA generation is slow, and the granian server shares it.
    """
    return generate_key_pair()


@pytest.fixture(scope="session")
def other_key_pair() -> KeyPair:
    """A second, unrelated RSA key pair (wrong-key tests)."""
    return generate_key_pair()


@pytest.fixture
def symmetric_key() -> SymmetricKey:
    """Fresh AES-256 session key."""
    return SymmetricKey.generate()


@pytest.fixture
def wrong_key() -> SymmetricKey:
    """A valid session key that differs from symmetric_key."""
    return SymmetricKey.generate()


# === Fake Clock ===


@dataclass
class FakeClock:
    """Manually advanced monotonic clock for expiry tests."""

    now: float = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_store(clock: FakeClock) -> Iterator[SessionStore]:
    """Store with a 60s timeout on the fake clock, no sweep thread."""
    store = SessionStore(60.0, clock=clock, start_cleanup=False)
    yield store
    store.destroy()


@pytest.fixture
def server(key_pair: KeyPair, session_store: SessionStore) -> FluxMaskServer:
    """Server engine backed by the fake-clock store."""
    return FluxMaskServer(key_pair, session_store=session_store)


# === In-process transport ===


@dataclass
class LoopbackTransport:
    """KeyExchangeTransport wired straight to a FluxMaskServer.

    Records every call and can be told to fail or stall.
    """

    server: FluxMaskServer
    public_key_calls: int = 0
    key_exchange_calls: int = 0
    fail_public_key: BaseException | None = None
    fail_key_exchange: BaseException | None = None
    public_key_override: str | None = None
    delay: float = 0.0
    payloads: list[dict[str, str]] = field(default_factory=list)

    async def fetch_public_key(self, url: str) -> str:
        self.public_key_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_public_key is not None:
            raise self.fail_public_key
        if self.public_key_override is not None:
            return self.public_key_override
        return self.server.public_key_pem()

    async def submit_key_exchange(self, url: str, payload: dict[str, str]) -> None:
        self.key_exchange_calls += 1
        self.payloads.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_key_exchange is not None:
            raise self.fail_key_exchange
        self.server.exchange_key(payload)


@pytest.fixture
def transport(server: FluxMaskServer) -> LoopbackTransport:
    return LoopbackTransport(server)


@pytest.fixture
def config() -> FluxMaskConfig:
    return merge_config()


# === E2E Server Fixtures ===


@dataclass
class E2EServer:
    """E2E test server info with log capture."""

    host: str
    port: int
    public_key: str
    _log_file: IO[bytes]

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def get_logs(self) -> str:
        """Read captured server logs."""
        self._log_file.seek(0)
        return self._log_file.read().decode("utf-8", errors="replace")


def get_free_port() -> int:
    """Get a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


async def wait_for_server(host: str, port: int, timeout: float = 10.0) -> None:
    """Wait for server to be ready."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://{host}:{port}/health") as resp:
                    if resp.status == 200:
                        return
        except (aiohttp.ClientError, OSError):
            pass
        await asyncio.sleep(0.1)
    raise TimeoutError(f"Server not ready after {timeout}s")


# Server module path for granian
TEST_SERVER_MODULE = "tests.e2e_server:app"

# Expiry itself is covered in-process with a fake clock
E2E_SESSION_TIMEOUT = 60.0


async def _start_granian_server(key_pair: KeyPair) -> AsyncIterator[E2EServer]:
    """Start granian server with flux-mask middleware.

    Args:
        key_pair: Server RSA identity (passed via environment)

    Yields:
        E2EServer with host, port, public_key, and log access
    """
    port = get_free_port()
    host = "127.0.0.1"

    env = {
        **dict(os.environ),
        "TEST_FLUX_MASK_PRIVATE_KEY": key_pair.private_key,
        "TEST_FLUX_MASK_PUBLIC_KEY": key_pair.public_key,
        "TEST_FLUX_MASK_SESSION_TIMEOUT": str(E2E_SESSION_TIMEOUT),
    }

    # File must stay open across yield
    log_file = tempfile.TemporaryFile(mode="w+b")

    # New process group so granian and its workers die together
    proc = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "granian",
            TEST_SERVER_MODULE,
            "--interface",
            "asgi",
            "--host",
            host,
            "--port",
            str(port),
            "--workers",
            "1",
            "--log-level",
            "info",
        ],
        env=env,
        stdout=log_file,
        stderr=log_file,
        start_new_session=True,
    )

    def _kill_process_group(sig: int) -> None:
        """Kill the entire process group (granian + workers)."""
        with contextlib.suppress(ProcessLookupError, OSError):
            os.killpg(os.getpgid(proc.pid), sig)

    try:
        await wait_for_server(host, port)
        yield E2EServer(host=host, port=port, public_key=key_pair.public_key, _log_file=log_file)
    finally:
        _kill_process_group(signal.SIGTERM)
        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            _kill_process_group(signal.SIGKILL)
            proc.wait()
        log_file.close()


@pytest_asyncio.fixture
async def granian_server(
    key_pair: KeyPair,
    request: pytest.FixtureRequest,
) -> AsyncIterator[E2EServer]:
    """Start granian server with flux-mask middleware.

    Function-scoped: each test gets its own server (and session store) with
    isolated logs. Server logs are printed to console after each test.
    """
    async for server in _start_granian_server(key_pair):
        yield server
        logs = server.get_logs()
        if logs.strip():
            test_name: str = request.node.name  # type: ignore[attr-defined]
            sys.stdout.write(f"\n{'=' * 60}\n")
            sys.stdout.write(f"Server logs for: {test_name}\n")
            sys.stdout.write(f"{'=' * 60}\n")
            sys.stdout.write(logs)
            sys.stdout.write(f"\n{'=' * 60}\n\n")
            sys.stdout.flush()


_TEST_TIMEOUT_SECS = 30.0


@pytest_asyncio.fixture
async def aiohttp_client(granian_server: E2EServer) -> AsyncIterator[Any]:
    """FluxMaskClientSession connected to the test server, protecting /api/ except /api/public/."""
    from flux_mask.middleware.aiohttp import FluxMaskClientSession

    async with FluxMaskClientSession(
        base_url=granian_server.base_url,
        config={"url_patterns": [r"/api/", r"/echo"], "exclude_patterns": [r"/api/public/"]},
        timeout=aiohttp.ClientTimeout(total=_TEST_TIMEOUT_SECS),
    ) as client:
        yield client
