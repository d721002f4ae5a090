from __future__ import annotations

import logging
import pathlib
import struct

import pytest

from escriptize.beam import BeamFile, Chunk, build_beam
from escriptize.config import BuildConfig


def atom_table(names: list[str]) -> bytes:
    out = struct.pack(">I", len(names))
    for name in names:
        raw = name.encode("utf-8")
        out += bytes([len(raw)]) + raw
    return out


def make_beam(module: str, *, extra: tuple[str, ...] = ("Dbgi", "Docs")) -> bytes:
    chunks = [
        Chunk("AtU8", atom_table([module, "main"])),
        Chunk("Code", b"\x00\x00\x00\x10code:" + module.encode("utf-8")),
        Chunk("ExpT", struct.pack(">IIII", 1, 2, 1, 3)),
    ]
    for name in extra:
        chunks.append(Chunk(name, f"{name} for {module}".encode("utf-8")))
    return build_beam(BeamFile(chunks=tuple(chunks)))


def write_app(root: pathlib.Path, name: str, *, applications=(), included=(), modules=(), priv=None):
    ebin = root / name / "ebin"
    ebin.mkdir(parents=True, exist_ok=True)
    apps = ", ".join(applications)
    inc = ", ".join(included)
    (ebin / f"{name}.app").write_text(
        f"{{application, {name}, [{{vsn, \"1.0.0\"}}, {{applications, [{apps}]}}, "
        f"{{included_applications, [{inc}]}}]}}.\n",
        encoding="utf-8",
    )
    for mod in modules:
        (ebin / f"{mod}.beam").write_bytes(make_beam(mod))
    for rel, content in (priv or {}).items():
        p = root / name / "priv" / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(content)
    return root / name


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("escriptize.tests")


@pytest.fixture
def build_lib(tmp_path: pathlib.Path) -> pathlib.Path:
    lib = tmp_path / "_build" / "prod" / "lib"
    write_app(
        lib,
        "my_app",
        applications=("kernel", "stdlib", "elixir", "logger", "dep_a"),
        modules=("Elixir.MyApp", "Elixir.MyApp.CLI"),
        priv={"static/index.txt": b"hello"},
    )
    write_app(
        lib,
        "dep_a",
        applications=("kernel", "stdlib", "eex"),
        included=("logger",),
        modules=("dep_a",),
        priv={"data.bin": b"\x00\x01"},
    )
    return lib


@pytest.fixture
def runtime_lib(tmp_path: pathlib.Path) -> pathlib.Path:
    lib = tmp_path / "runtime"
    write_app(lib, "elixir", applications=("kernel", "stdlib"), modules=("elixir", "Elixir.Enum"))
    write_app(lib, "logger", applications=("kernel", "stdlib", "elixir"), modules=("Elixir.Logger",))
    write_app(lib, "eex", applications=("kernel", "stdlib", "elixir"), modules=("Elixir.EEx",))
    write_app(lib, "iex", applications=("kernel", "stdlib", "elixir"), modules=("Elixir.IEx",))
    return lib


@pytest.fixture
def compiled() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def fake_compile(compiled: list[tuple[str, str]]):
    def _compile(module: str, source: str) -> bytes:
        compiled.append((module, source))
        return make_beam(module, extra=())

    return _compile


@pytest.fixture
def base_config(tmp_path: pathlib.Path, build_lib: pathlib.Path, runtime_lib: pathlib.Path) -> BuildConfig:
    return BuildConfig(
        app="my_app",
        main_module="MyApp.CLI",
        output_path=tmp_path / "out" / "my_app",
        build_lib_path=build_lib,
        start_app="my_app",
        config_path=tmp_path / "config" / "sys.config",
        lib_dirs=(runtime_lib,),
    )
