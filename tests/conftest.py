"""hardmem test configuration."""
import os
import sys
import pytest
from pathlib import Path

# Ensure the hardmem package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture
def tmp_hardmem_dir(tmp_path):
    """Create a temporary HARDMEM_HOME for testing."""
    home = tmp_path / ".hardmem"
    home.mkdir()
    os.environ["HARDMEM_HOME"] = str(home)
    # Default: disable encryption in tests for readable exports
    old_encrypt = os.environ.get("HARDMEM_ENCRYPT")
    os.environ["HARDMEM_ENCRYPT"] = "0"
    yield home
    os.environ.pop("HARDMEM_HOME", None)
    if old_encrypt is not None:
        os.environ["HARDMEM_ENCRYPT"] = old_encrypt
    else:
        os.environ.pop("HARDMEM_ENCRYPT", None)
    from hardmem.crypto import reset_crypto_state
    reset_crypto_state()


@pytest.fixture
def tmp_hardmem_dir_encrypted(tmp_path):
    """Create a temporary HARDMEM_HOME with encryption enabled."""
    home = tmp_path / ".hardmem"
    home.mkdir()
    os.environ["HARDMEM_HOME"] = str(home)
    os.environ["HARDMEM_ENCRYPT"] = "1"
    from hardmem.crypto import reset_crypto_state
    reset_crypto_state()
    yield home
    os.environ.pop("HARDMEM_HOME", None)
    os.environ.pop("HARDMEM_ENCRYPT", None)
    reset_crypto_state()


@pytest.fixture
def store(tmp_hardmem_dir):
    """Create a fresh SQLiteStore for testing."""
    from hardmem.sqlite_store import SQLiteStore
    s = SQLiteStore(db_path=tmp_hardmem_dir / "test.db")
    yield s
    s.close()


@pytest.fixture
def memory_store():
    """Create a fresh in-process store."""
    from hardmem.storage import InMemoryStore
    return InMemoryStore()


@pytest.fixture
def seed(memory_store):
    """Async helper that saves a memory into ``memory_store``.

    Memories saved later come first in store order.
    """
    async def _seed(title, content="", tags=None, user_id="u1", **extra):
        data = {"title": title, "content": content, "tags": tags or [], "user_id": user_id}
        data.update(extra)
        return await memory_store.save_memory(data)
    return _seed


@pytest.fixture
def _reset_bridge(tmp_hardmem_dir):
    """Reset the bridge singleton so each test gets a fresh store."""
    from hardmem.bridge import reset_memory

    reset_memory()
    yield
    reset_memory()


@pytest.fixture
def bridge_store(_reset_bridge, memory_store):
    """Install ``memory_store`` as the bridge singleton."""
    from hardmem.bridge import set_store

    set_store(memory_store)
    return memory_store
