from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest


SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "mint_worker_token.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("mint_worker_token", SCRIPT)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_mint_then_revoke_without_name_or_region(store, db_path: str, capsys: pytest.CaptureFixture[str]) -> None:
    script = _load_script()
    assert script.main(["--name", "eu-pool", "--region", "eu", "--db-path", db_path]) == 0
    out = capsys.readouterr().out
    assert "secret:   vxw_" in out

    (token,) = store.list_worker_tokens()
    assert script.main(["--revoke", token.token_id, "--db-path", db_path]) == 0
    assert f"revoked {token.token_id}" in capsys.readouterr().out
    assert store.get_worker_token(token_id=token.token_id).revoked is True


def test_minting_still_needs_name_and_region(db_path: str) -> None:
    script = _load_script()
    with pytest.raises(SystemExit):
        script.main(["--name", "eu-pool", "--db-path", db_path])
