import dataclasses
import io
import os
import zipfile

import pytest

from conftest import make_beam
from escriptize.beam import parse_beam
from escriptize.builder import build_escript, pack_archive, render_header, write_escript
from escriptize.config import STRIP_DISABLED
from escriptize.errors import BuildError


def header_lines(data: bytes) -> list[bytes]:
    return data.split(b"\n", 3)[:3]


def test_missing_main_module_fails_before_writing(base_config, fake_compile, compiled, logger):
    config = dataclasses.replace(base_config, main_module=None)
    with pytest.raises(BuildError, match="please set main_module"):
        build_escript(config, compile_module=fake_compile, logger=logger)
    assert not config.output_path.exists()
    assert compiled == []


def test_unloadable_main_module(base_config, fake_compile, logger):
    config = dataclasses.replace(base_config, main_module="MyApp.Missing")
    with pytest.raises(BuildError, match="MyApp.Missing defined as main_module could not be loaded"):
        build_escript(config, compile_module=fake_compile, logger=logger)

    # A unit that defines some other module does not count.
    ebin = base_config.build_lib_path / "my_app" / "ebin"
    (ebin / "Elixir.MyApp.Other.beam").write_bytes(make_beam("Elixir.Unrelated"))
    config = dataclasses.replace(base_config, main_module="MyApp.Other")
    with pytest.raises(BuildError, match="could not be loaded"):
        build_escript(config, compile_module=fake_compile, logger=logger)
    assert not config.output_path.exists()


def test_main_module_may_live_in_a_dependency(base_config, fake_compile, logger):
    config = dataclasses.replace(base_config, language="erlang", main_module="dep_a", embed_elixir=False)
    assert build_escript(config, compile_module=fake_compile, logger=logger).is_file()


def test_minimal_build(base_config, fake_compile, logger):
    config = dataclasses.replace(base_config, embed_elixir=False)
    out = build_escript(config, compile_module=fake_compile, logger=logger)
    assert out == config.output_path

    data = out.read_bytes()
    assert header_lines(data) == [
        b"#! /usr/bin/env escript",
        b"%% ",
        b"%%! -escript main my_app_escript ",
    ]
    assert os.stat(out).st_mode & 0o111 == 0o111
    assert not out.with_name(out.name + ".tmp").exists()

    with zipfile.ZipFile(out) as zf:
        names = zf.namelist()
        assert names[-1] == "my_app_escript.beam"
        assert "my_app/ebin/Elixir.MyApp.CLI.beam" in names
        assert "my_app/ebin/my_app.app" in names
        assert "dep_a/ebin/dep_a.beam" in names
        assert not any(n.startswith("elixir/") for n in names)
        assert not any("/priv/" in n for n in names)

        unit = parse_beam(zf.read("my_app/ebin/Elixir.MyApp.beam"))
        assert unit.chunk_names() == ["AtU8", "Code", "ExpT"]
        assert zf.read("my_app/ebin/my_app.app").startswith(b"{application, my_app")


def test_no_strip_keeps_units_verbatim(base_config, fake_compile, logger):
    config = dataclasses.replace(base_config, strip=STRIP_DISABLED, embed_elixir=False)
    out = build_escript(config, compile_module=fake_compile, logger=logger)
    with zipfile.ZipFile(out) as zf:
        assert zf.read("my_app/ebin/Elixir.MyApp.beam") == make_beam("Elixir.MyApp")


def test_build_embeds_runtime_apps(base_config, fake_compile, logger):
    out = build_escript(base_config, compile_module=fake_compile, logger=logger)
    with zipfile.ZipFile(out) as zf:
        names = zf.namelist()
    assert "elixir/ebin/Elixir.Enum.beam" in names
    assert "logger/ebin/Elixir.Logger.beam" in names
    assert "eex/ebin/Elixir.EEx.beam" in names
    assert not any(n.startswith("iex/") for n in names)


def test_build_is_deterministic(base_config, fake_compile, logger):
    first = build_escript(base_config, compile_module=fake_compile, logger=logger).read_bytes()
    second = build_escript(base_config, compile_module=fake_compile, logger=logger).read_bytes()
    assert first == second


def test_launcher_is_specialized_to_the_project(base_config, fake_compile, compiled, logger):
    cfg_dir = base_config.config_path.parent
    cfg_dir.mkdir(parents=True)
    base_config.config_path.write_text("[{my_app, [{port, 4000}]}].\n")
    (cfg_dir / "sys.prod.config").write_text("[{my_app, [{port, 80}]}].\n")
    (cfg_dir / "runtime.exs").write_text("import Config\nconfig :my_app, secret: System.fetch_env!(\"S\")\n")

    config = dataclasses.replace(base_config, comment="my tool", emu_args="-noinput")
    out = build_escript(config, compile_module=fake_compile, logger=logger)

    [(module, source)] = compiled
    assert module == "my_app_escript"
    assert "[{my_app, [{port, 80}]}]" in source
    assert "System.fetch_env!" in source
    assert "application:ensure_all_started(my_app)" in source
    assert "'Elixir.MyApp.CLI':main(Argv)" in source
    assert header_lines(out.read_bytes())[1:] == [b"%% my tool", b"%%! -escript main my_app_escript -noinput"]


def test_compile_failure_leaves_existing_output_untouched(base_config, logger):
    base_config.output_path.parent.mkdir(parents=True)
    base_config.output_path.write_bytes(b"previous")

    def failing_compile(module, source):
        raise BuildError("erlc failed to compile my_app_escript")

    with pytest.raises(BuildError, match="erlc failed"):
        build_escript(base_config, compile_module=failing_compile, logger=logger)
    assert base_config.output_path.read_bytes() == b"previous"


def test_render_header_custom_values():
    header = render_header(
        launcher="tool_escript",
        shebang="#!/usr/local/bin/escript",
        comment="line one\nline two",
        emu_args="-smp auto",
    )
    assert header == (
        b"#!/usr/local/bin/escript\n"
        b"%% line one line two\n"
        b"%%! -escript main tool_escript -smp auto\n"
    )


def test_pack_archive_is_stable_and_validates_level():
    entries = {"b/ebin/b.app": b"b", "a/ebin/a.app": b"a"}
    data = pack_archive(entries)
    assert data == pack_archive(dict(entries))
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == ["b/ebin/b.app", "a/ebin/a.app"]
        assert zf.getinfo("a/ebin/a.app").date_time == (1980, 1, 1, 0, 0, 0)

    with pytest.raises(BuildError, match="compresslevel"):
        pack_archive(entries, compresslevel=12)


def test_write_escript_creates_parents(tmp_path):
    target = tmp_path / "nested" / "dir" / "tool"
    write_escript(target, b"#!x\n")
    assert target.read_bytes() == b"#!x\n"
    assert os.stat(target).st_mode & 0o111 == 0o111
