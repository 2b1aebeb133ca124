import os
import sys

import pytest
from fastapi.testclient import TestClient

# Ensure the project packages are importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings
from app.main import create_app

from helpers import Env


@pytest.fixture
def env():
    return Env()


@pytest.fixture
def client(env):
    app = create_app(system=env.system, settings=Settings(env="test"))
    return TestClient(app)
