import io
import json

from shieldagent.core.plugins import runtime
from shieldagent.domain.enums import ExitCode
from shieldagent.plugins.files.plugin import LocalStorePlugin


def _run(*argv, stdin=b""):
    stdout, stderr = io.BytesIO(), io.StringIO()
    code = runtime.run(LocalStorePlugin(), list(argv), stdin=io.BytesIO(stdin), stdout=stdout, stderr=stderr)
    return code, stdout.getvalue(), stderr.getvalue()


def test_store_retrieve_purge(tmp_path):
    endpoint = json.dumps({"base_dir": str(tmp_path / "vault")})
    payload = b"x" * (3 * 1024 * 1024 + 17)

    code, out, _ = _run("store", "--endpoint", endpoint, stdin=payload)
    assert code == ExitCode.SUCCESS
    key = out.decode().strip().splitlines()[-1]
    stored = tmp_path / "vault" / key
    assert stored.read_bytes() == payload
    assert not list((tmp_path / "vault").rglob("*.partial"))

    code, out, _ = _run("retrieve", "--endpoint", endpoint, "--key", key)
    assert code == ExitCode.SUCCESS
    assert out == payload

    code, _, _ = _run("purge", "--endpoint", endpoint, "--key", key)
    assert code == ExitCode.SUCCESS
    assert not stored.exists()


def test_purge_is_idempotent(tmp_path):
    endpoint = json.dumps({"base_dir": str(tmp_path)})
    code, out, _ = _run("store", "--endpoint", endpoint, stdin=b"data")
    key = out.decode().strip()

    assert _run("purge", "--endpoint", endpoint, "--key", key)[0] == ExitCode.SUCCESS
    assert _run("purge", "--endpoint", endpoint, "--key", key)[0] == ExitCode.SUCCESS


def test_keys_are_unique(tmp_path):
    endpoint = json.dumps({"base_dir": str(tmp_path)})
    first = _run("store", "--endpoint", endpoint, stdin=b"a")[1]
    second = _run("store", "--endpoint", endpoint, stdin=b"b")[1]
    assert first != second


def test_retrieve_missing_key_fails(tmp_path):
    endpoint = json.dumps({"base_dir": str(tmp_path)})
    code, _, err = _run("retrieve", "--endpoint", endpoint, "--key", "2024/01/01/nothing")
    assert code == ExitCode.PLUGIN_FAILURE
    assert "no archive stored" in err


def test_keys_cannot_escape_base_dir(tmp_path):
    vault = tmp_path / "vault"
    vault.mkdir()
    secret = tmp_path / "secret"
    secret.write_text("keep out")
    endpoint = json.dumps({"base_dir": str(vault)})

    code, out, err = _run("retrieve", "--endpoint", endpoint, "--key", "../secret")
    assert code == ExitCode.PLUGIN_FAILURE
    assert out == b""
    assert "outside of base_dir" in err

    code, _, _ = _run("purge", "--endpoint", endpoint, "--key", "../secret")
    assert code == ExitCode.PLUGIN_FAILURE
    assert secret.exists()


def test_purge_requires_key(tmp_path):
    code, _, _ = _run("purge", "--endpoint", json.dumps({"base_dir": str(tmp_path)}))
    assert code == ExitCode.RESTORE_KEY_REQUIRED


def test_target_operations_are_unsupported(tmp_path):
    code, _, _ = _run("backup", "--endpoint", json.dumps({"base_dir": str(tmp_path)}))
    assert code == ExitCode.UNSUPPORTED_ACTION
