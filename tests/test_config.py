import pytest

from escriptize.config import merge_config, read_config, read_runtime_config
from escriptize.errors import BuildError
from escriptize.terms import Atom


def kw(**values):
    return [(Atom(k), v) for k, v in values.items()]


def test_runtime_keys_win_over_compile_keys():
    compile_layer = [(Atom("my_app"), kw(a=1, b=2))]
    runtime_layer = [(Atom("my_app"), kw(b=3, c=4))]
    merged = merge_config(compile_layer, runtime_layer)
    assert len(merged) == 1
    app, values = merged[0]
    assert app == "my_app"
    assert dict(values) == {"a": 1, "b": 3, "c": 4}


def test_merge_is_deep_for_nested_keyword_lists():
    base = [(Atom("my_app"), kw(repo=kw(host="db", port=5432), pool=10))]
    override = [(Atom("my_app"), kw(repo=kw(port=6543))), (Atom("logger"), kw(level=Atom("info")))]
    merged = dict(merge_config(base, override))
    assert dict(merged["my_app"])["pool"] == 10
    assert dict(dict(merged["my_app"])["repo"]) == {"host": "db", "port": 6543}
    assert merged["logger"] == kw(level=Atom("info"))


def test_merge_replaces_non_keyword_values():
    base = [(Atom("my_app"), kw(hosts=["a", "b"]))]
    override = [(Atom("my_app"), kw(hosts=["c"]))]
    assert merge_config(base, override) == [(Atom("my_app"), kw(hosts=["c"]))]


def test_read_config_missing_file_is_empty(tmp_path):
    assert read_config(tmp_path / "config" / "sys.config", env="prod", target="host") == []


def test_read_config_applies_env_and_target_overlays(tmp_path):
    cfg = tmp_path / "sys.config"
    cfg.write_text("[{my_app, [{port, 4000}, {name, <<\"base\">>}]}].\n")
    (tmp_path / "sys.prod.config").write_text("[{my_app, [{port, 80}]}].\n")
    (tmp_path / "sys.rpi.config").write_text("[{my_app, [{name, <<\"rpi\">>}]}].\n")
    (tmp_path / "sys.dev.config").write_text("[{my_app, [{port, 1}]}].\n")

    config = read_config(cfg, env="prod", target="rpi")
    assert dict(dict(config)["my_app"]) == {"port": 80, "name": b"rpi"}


def test_read_config_rejects_bad_shapes(tmp_path):
    cfg = tmp_path / "sys.config"
    cfg.write_text("{not, a, list}.")
    with pytest.raises(BuildError, match="must contain a list"):
        read_config(cfg, env="prod", target="host")

    cfg.write_text("[{my_app, [{port 4000}]}].")
    with pytest.raises(BuildError, match="Invalid config file"):
        read_config(cfg, env="prod", target="host")


def test_read_runtime_config(tmp_path):
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir()
    assert read_runtime_config(cfg_dir / "sys.config") is None

    (cfg_dir / "runtime.exs").write_text('import Config\nconfig :my_app, port: System.get_env("PORT")\n')
    runtime = read_runtime_config(cfg_dir / "sys.config")
    assert runtime is not None
    assert runtime.path == "config/runtime.exs"
    assert "System.get_env" in runtime.source


def test_unreadable_config_files_are_build_errors(tmp_path):
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir()
    cfg = cfg_dir / "sys.config"
    cfg.write_bytes(b'[{my_app, [{name, "caf\xe9"}]}].')
    with pytest.raises(BuildError, match="Could not read"):
        read_config(cfg, env="prod", target="host")

    (cfg_dir / "runtime.exs").write_bytes(b'config :my_app, name: "caf\xe9"\n')
    with pytest.raises(BuildError, match="Could not read"):
        read_runtime_config(cfg)
