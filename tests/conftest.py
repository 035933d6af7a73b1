import pytest

from fakes import HOST
from openwrt_autoreboot import ServerConfig


@pytest.fixture
def server():
    return ServerConfig(host=HOST, user="root", password="secret")
