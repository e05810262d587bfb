import struct
import zipfile

import pytest

from nullspace.config import KdfParams
from nullspace.storage.file_storage import FileStorage
from nullspace.utils.encryption import EncryptionManager

# argon2 at its minimum cost keeps the suite fast; production defaults live in KdfParams
FAST_KDF = {
    "NULLSPACE_ARGON2_TIME_COST": "1",
    "NULLSPACE_ARGON2_MEMORY_COST": "64",
    "NULLSPACE_ARGON2_PARALLELISM": "1",
}


@pytest.fixture(autouse=True)
def fast_kdf(tmp_path, monkeypatch):
    for key, value in FAST_KDF.items():
        monkeypatch.setenv(key, value)
    # isolate data dir per test
    monkeypatch.setenv("NULLSPACE_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture()
def kdf_params():
    return KdfParams.from_env()


@pytest.fixture()
def salt():
    return EncryptionManager.generate_salt()


@pytest.fixture()
def enc(salt):
    with EncryptionManager.new_from_password("correct horse battery staple", salt) as manager:
        yield manager


@pytest.fixture()
def storage(tmp_path):
    return FileStorage(tmp_path / "vault")


def _break_deflate_stream(path, name):
    """Set the reserved block type on the first deflate block of entry ``name``."""
    with zipfile.ZipFile(path) as zf:
        info = zf.getinfo(name)
    assert info.compress_type == zipfile.ZIP_DEFLATED
    data = bytearray(path.read_bytes())
    name_len, extra_len = struct.unpack_from("<HH", data, info.header_offset + 26)
    data[info.header_offset + 30 + name_len + extra_len] |= 0b110
    path.write_bytes(bytes(data))
    return path


@pytest.fixture()
def break_deflate_stream():
    return _break_deflate_stream
