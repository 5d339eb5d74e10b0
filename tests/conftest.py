import importlib.util
import os
import sys
from pathlib import Path

import pytest

from kobber_crm import AppConfig, AuthService, Database, OpportunityRepository, UserRepository


def build_config(tmp_path: Path, **overrides) -> AppConfig:
    settings = dict(
        data_dir=tmp_path,
        db_url=f"sqlite:///{tmp_path / 'test.db'}",
        admin_emails=("boss@kobber.com.br",),
        login_max_attempts=3,
        login_lockout_minutes=1,
    )
    settings.update(overrides)
    return AppConfig(**settings)


@pytest.fixture()
def config(tmp_path):
    return build_config(tmp_path)


@pytest.fixture()
def database(config):
    db = Database.from_config(config)
    db.init_schema()
    return db


@pytest.fixture()
def users(database):
    return UserRepository(database)


@pytest.fixture()
def opportunities(database):
    return OpportunityRepository(database)


@pytest.fixture()
def auth(config, users):
    return AuthService(config, users)


@pytest.fixture(scope="session")
def app_module(tmp_path_factory):
    data_dir = tmp_path_factory.mktemp("app_data")
    os.environ["KOBBER_DATA_DIR"] = str(data_dir)
    os.environ["KOBBER_DB_URL"] = f"sqlite:///{data_dir / 'app.db'}"
    repo_root = Path(__file__).resolve().parents[1]
    app_path = repo_root / "app.py"
    spec = importlib.util.spec_from_file_location("app_for_tests", app_path)
    module = importlib.util.module_from_spec(spec)
    loader = spec.loader
    if loader is None:
        raise RuntimeError("Unable to load app module for tests")
    sys.modules[spec.name] = module
    loader.exec_module(module)
    return module
