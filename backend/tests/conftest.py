import base64
import json
import os
import sys
import tempfile
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep the module-level app away from the real data directory
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="mockprep-tests-"))


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("ALLOW_UNVERIFIED_JWT_DEV", "true")
    monkeypatch.setenv("QA_MODE", "true")
    monkeypatch.delenv("SUPABASE_JWT_SECRET", raising=False)
    monkeypatch.delenv("SUPABASE_URL", raising=False)


def _enc(obj: dict) -> str:
    raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


@pytest.fixture
def make_dev_token():
    def _make(sub: str = "pytest-user") -> str:
        header = _enc({"alg": "none", "typ": "JWT"})
        payload = _enc({"sub": sub, "iat": 0})
        return f"{header}.{payload}."

    return _make


@pytest.fixture
def dev_jwt_token(make_dev_token) -> str:
    return make_dev_token("pytest-user")
