"""Shared fixtures: a small Cargo project, a local advisory database and an offline configuration."""

import pytest

from buildmatrix.config import MatrixConfig
from tests.fakes import CARGO_LOCK, CARGO_TOML, MAIN_RS, RSA_ADVISORY


@pytest.fixture
def cargo_project(tmp_path):
    """A minimal Cargo project with generated directories that must be ignored."""
    project = tmp_path / "nez"
    (project / "src").mkdir(parents=True)
    (project / "Cargo.toml").write_text(CARGO_TOML, encoding="utf-8")
    (project / "Cargo.lock").write_text(CARGO_LOCK, encoding="utf-8")
    (project / "src" / "main.rs").write_text(MAIN_RS, encoding="utf-8")
    (project / "README.md").write_text("# nez\n", encoding="utf-8")
    (project / ".git").mkdir()
    (project / ".git" / "config.toml").write_text("[core]\n", encoding="utf-8")
    (project / "target" / "release").mkdir(parents=True)
    (project / "target" / "release" / "junk.rs").write_text("// generated\n", encoding="utf-8")
    return project


@pytest.fixture
def advisory_db(tmp_path):
    """Local advisory database with one advisory against rsa."""
    db = tmp_path / "advisory-db"
    crate_dir = db / "crates" / "rsa"
    crate_dir.mkdir(parents=True)
    (crate_dir / "RUSTSEC-2023-0071.md").write_text(RSA_ADVISORY, encoding="utf-8")
    return db


@pytest.fixture
def matrix_config(advisory_db):
    """Configuration that never touches the network."""
    config = MatrixConfig()
    config.audit.database = str(advisory_db)
    config.formatter.command = "whitespace"
    config.jobs = 4
    return config
