import asyncio
import hashlib
import inspect
import json
import os
import sys
from pathlib import Path

# Set before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL keeps every test on the in-memory KV store
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("AUTH_SERVER_URL", "http://testserver")

import cbor2  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives import hashes  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec  # noqa: E402
from webauthn.helpers import bytes_to_base64url  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from lumenauth.service.runtime import (  # noqa: E402
    Runtime,
    reset_runtime_for_tests,
    set_runtime,
)
from lumenauth.service.tokens import pkce_challenge  # noqa: E402
from lumenauth.storage.kv import MemoryKV  # noqa: E402

CODE_VERIFIER = "verifier-" + "x" * 50
REDIRECT_URI = "https://app.example.com/callback"
CLIENT_ID = "demo-client"


class RecordingEmailSender:
    """Keeps every email code instead of sending it."""

    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent = []

    async def send_mfa_code(self, to_email, code, locale="en"):
        self.sent.append({"to": to_email, "code": code, "locale": locale})
        return self.ok

    @property
    def last_code(self):
        return self.sent[-1]["code"]


class RecordingSmsSender:
    """Keeps every SMS body instead of sending it."""

    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent = []

    async def send_sms(self, to_number, body):
        self.sent.append({"to": to_number, "body": body})
        return self.ok

    @property
    def last_code(self):
        return self.sent[-1]["body"].rsplit(" ", 1)[-1]


class YieldingKV(MemoryKV):
    """MemoryKV that gives up the event loop before every call, as a network store does."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def put(self, key, value, ttl_seconds=None):
        await asyncio.sleep(0)
        return await super().put(key, value, ttl_seconds)

    async def delete(self, key):
        await asyncio.sleep(0)
        return await super().delete(key)

    async def incr_below(self, key, limit, ttl_seconds):
        await asyncio.sleep(0)
        return await super().incr_below(key, limit, ttl_seconds)


class SoftwareAuthenticator:
    """One P-256 passkey that signs assertions shaped like a browser's response."""

    def __init__(self, raw_id: bytes = b"software-passkey") -> None:
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = bytes_to_base64url(raw_id)
        self.sign_count = 0

    @property
    def cose_public_key(self) -> bytes:
        numbers = self.private_key.public_key().public_numbers()
        # EC2 key, ES256, P-256
        return cbor2.dumps(
            {
                1: 2,
                3: -7,
                -1: 1,
                -2: numbers.x.to_bytes(32, "big"),
                -3: numbers.y.to_bytes(32, "big"),
            }
        )

    def assertion(self, challenge, *, rp_id="testserver", origin="http://testserver"):
        self.sign_count += 1
        # user present and user verified
        authenticator_data = (
            hashlib.sha256(rp_id.encode()).digest()
            + bytes([0x05])
            + self.sign_count.to_bytes(4, "big")
        )
        client_data = json.dumps(
            {
                "type": "webauthn.get",
                "challenge": challenge,
                "origin": origin,
                "crossOrigin": False,
            }
        ).encode()
        signature = self.private_key.sign(
            authenticator_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        return {
            "id": self.credential_id,
            "rawId": self.credential_id,
            "type": "public-key",
            "response": {
                "authenticatorData": bytes_to_base64url(authenticator_data),
                "clientDataJSON": bytes_to_base64url(client_data),
                "signature": bytes_to_base64url(signature),
            },
            "clientExtensionResults": {},
        }


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def runtime(email_sender, sms_sender):
    """Runtime on the memory store with recording delivery."""
    return set_runtime(Runtime(email_sender=email_sender, sms_sender=sms_sender))


@pytest.fixture
def demo_app(runtime):
    return runtime.store.create_app(
        "Demo",
        redirect_uris=[REDIRECT_URI],
        scopes=["openid", "profile", "offline_access"],
        client_id=CLIENT_ID,
    )


@pytest.fixture
def code_challenge():
    return pkce_challenge(CODE_VERIFIER)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
