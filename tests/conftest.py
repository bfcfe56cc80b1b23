import asyncio
import hashlib
from pathlib import Path

import pytest

from filetransfer.config import Config
from filetransfer.file.storage import disk_free_space
from filetransfer.server import FileServer
from filetransfer.transfer import TransferClient

CHUNK = 64 * 1024


def md5(data: bytes) -> bytes:
    return hashlib.md5(data).digest()


@pytest.fixture
def store_dir(tmp_path) -> Path:
    return tmp_path / 'store'


@pytest.fixture
def free_space():
    """Free space the server sees; None means the real disk, an exception is raised."""
    return {'bytes': None}


@pytest.fixture
async def server(store_dir, free_space):
    def probe(root):
        value = free_space['bytes']
        if value is None:
            return disk_free_space(root)
        if isinstance(value, Exception):
            raise value
        return value

    config = Config(host='127.0.0.1', port=0, root_dir=store_dir,
                    chunk_size=CHUNK, notify_timeout=1.0)
    server = FileServer(config, free_space=probe)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def client(server) -> TransferClient:
    return TransferClient('127.0.0.1', server.port, chunk_size=CHUNK)


@pytest.fixture
def make_file(tmp_path):
    def make(name: str, data: bytes, directory: str = 'local') -> Path:
        folder = tmp_path / directory
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / name
        path.write_bytes(data)
        return path
    return make


@pytest.fixture
async def fake_server():
    """Start bare asyncio servers that play the server side by hand."""
    servers = []

    async def start(handler) -> int:
        srv = await asyncio.start_server(handler, '127.0.0.1', 0)
        servers.append(srv)
        return srv.sockets[0].getsockname()[1]

    yield start

    for srv in servers:
        srv.close()
        await srv.wait_closed()
