import os
import tempfile

# Module-level config is read at import; point it at a scratch dir first.
_SCRATCH = tempfile.mkdtemp(prefix="attendledger-tests-")
os.environ.setdefault("AL_DB_PATH", os.path.join(_SCRATCH, "default.db"))
os.environ.setdefault("AL_SIGNING_KEY_PATH", os.path.join(_SCRATCH, "keys", "ledger_ed25519.pem"))
os.environ.setdefault("AL_VERIFY_KEY_PATH", os.path.join(_SCRATCH, "keys", "ledger_ed25519.pub.pem"))
os.environ.setdefault("ZOOM_WEBHOOK_SECRET", "test-webhook-secret")
os.environ["AL_SCHEDULER_ENABLED"] = "false"

import pytest  # noqa: E402

from attendledger_integrity import IntegrityVerifier  # noqa: E402
from attendledger_ledger import RecordGenerator, RecordSigner  # noqa: E402
from attendledger_scheduler import ReconciliationScheduler  # noqa: E402
from attendledger_store import Store  # noqa: E402


@pytest.fixture
def store(tmp_path):
    return Store(str(tmp_path / "attendledger.db"))


@pytest.fixture
def signer():
    return RecordSigner.generate()


@pytest.fixture
def generator(store, signer):
    return RecordGenerator(store, signer)


@pytest.fixture
def verifier(store, signer):
    return IntegrityVerifier(store, signer)


@pytest.fixture
def reconciler(store, generator):
    return ReconciliationScheduler(store, generator, max_workers=1)
