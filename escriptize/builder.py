"""Escript builder.

This module runs the build pipeline:

- It collects compiled units from the project, its dependencies and (when
  embedding Elixir) the runtime applications the project needs, swapping in
  consolidated protocol units where enabled.
- It strips debug and documentation chunks from every ``.beam`` file.
- It renders and compiles the ``<app>_escript`` launcher module.
- It zips everything in memory and writes a single executable file made of a
  three-line header followed by the zip bytes.

Nothing is written until every in-memory stage has succeeded.
"""

import io
import logging
import os
import pathlib
import stat
import time
import zipfile

from escriptize.beam import BeamError, module_name, strip_entries
from escriptize.collector import collect_units, dependency_names, read_units
from escriptize.config import DEFAULT_SHEBANG, BuildConfig, RuntimeConfig, read_config, read_runtime_config
from escriptize.errors import BuildError
from escriptize.launcher import CompileFn, erlc_compile, generate_launcher, launcher_module
from escriptize.terms import Atom, module_atom


# Fixed entry timestamp so identical inputs produce identical archives.
_ZIP_DATE_TIME: tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)


def _validate_compresslevel(compresslevel: int) -> None:
    """Validate a zip compression level.

    :param compresslevel: Compression level (0-9).
    :raises BuildError: If the level is out of range.
    """

    if compresslevel < 0 or compresslevel > 9:
        raise BuildError(f"Invalid compresslevel={compresslevel}; expected 0-9.")


def _check_main_module(config: BuildConfig) -> None:
    """Fail early when the entry module is unset or cannot be loaded.

    The module counts as loadable when a ``<module>.beam`` in the project's or
    a dependency's ``ebin/`` directory parses and defines that module.

    :param config: Build config.
    :raises BuildError: If the entry module is missing or not loadable.
    """

    if config.main_module is None or len(config.main_module) == 0:
        raise BuildError(
            "Could not generate escript, please set main_module in your project "
            "configuration to a module that implements main/1"
        )

    mod: Atom = module_atom(config.main_module, config.language)
    ebin_dirs: list[pathlib.Path] = [config.app_path / "ebin"]
    ebin_dirs.extend(config.build_lib_path / name / "ebin" for name in dependency_names(config))

    candidates: list[pathlib.Path] = [ebin / f"{mod}.beam" for ebin in ebin_dirs]
    found: list[pathlib.Path] = [p for p in candidates if p.is_file() is True]
    if len(found) > 0:
        try:
            defined: Atom | None = module_name(found[0].read_bytes())
        except (BeamError, OSError):
            defined = None
        if defined == mod:
            return

    raise BuildError(
        f"Could not generate escript, module {config.main_module} defined as "
        "main_module could not be loaded"
    )


def pack_archive(entries: dict[str, bytes], *, compresslevel: int = 6) -> bytes:
    """Pack archive entries into an in-memory zip.

    :param entries: Archive path to payload, in archive order.
    :param compresslevel: Deflate compression level.
    :returns: Zip bytes.
    :raises BuildError: If the archive cannot be created.
    """

    _validate_compresslevel(compresslevel)

    buf: io.BytesIO = io.BytesIO()
    try:
        with zipfile.ZipFile(
            buf,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compresslevel,
        ) as zf:
            for arcname, payload in entries.items():
                info: zipfile.ZipInfo = zipfile.ZipInfo(arcname, date_time=_ZIP_DATE_TIME)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = (stat.S_IFREG | 0o644) << 16
                zf.writestr(info, payload, compresslevel=compresslevel)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError) as e:
        raise BuildError(f"Error creating escript: {e}") from e

    return buf.getvalue()


def render_header(*, launcher: str, shebang: str = DEFAULT_SHEBANG, comment: str = "", emu_args: str = "") -> bytes:
    """Render the three header lines that precede the archive.

    :param launcher: Launcher module name.
    :param shebang: Interpreter directive line; a trailing newline is added if missing.
    :param comment: Comment text, always emitted as one ``%%`` line.
    :param emu_args: Extra emulator arguments.
    :returns: Header bytes.
    """

    if shebang.endswith("\n") is False:
        shebang += "\n"
    comment_text: str = " ".join(comment.splitlines())
    comment_line: str = f"%% {comment_text}\n"
    emu_args_line: str = f"%%! -escript main {launcher} {emu_args}\n"
    return (shebang + comment_line + emu_args_line).encode("utf-8")


def write_escript(output_path: pathlib.Path, data: bytes) -> None:
    """Write the escript and make it executable.

    The file is written next to its destination and renamed into place, so the
    destination holds either the previous file or the complete new one.

    :param output_path: Destination path.
    :param data: Full escript bytes.
    :raises BuildError: If the file cannot be written.
    """

    tmp_path: pathlib.Path = output_path.with_name(output_path.name + ".tmp")
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "wb") as f:
            f.write(data)
        mode: int = tmp_path.stat().st_mode
        os.chmod(tmp_path, stat.S_IMODE(mode) | 0o111)
        tmp_path.replace(output_path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise BuildError(f"Could not write escript {output_path}: {e}") from e


def build_escript(
    config: BuildConfig,
    *,
    compile_module: CompileFn | None = None,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Build an escript.

    :param config: Resolved build config.
    :param compile_module: Compiler for the launcher; defaults to ``erlc``.
    :param logger: Optional logger for realtime build progress output.
    :returns: Path of the written escript.
    :raises BuildError: If building fails.
    """

    if logger is None:
        logger = logging.getLogger("escriptize")
    if compile_module is None:
        compile_module = erlc_compile

    _validate_compresslevel(config.compresslevel)
    _check_main_module(config)

    t_total0: float = time.perf_counter()
    logger.info(f"escriptize: app={config.app} main_module={config.main_module} language={config.language}")
    logger.info(f"escriptize: build_lib_path={config.build_lib_path}")
    logger.info(f"escriptize: output={config.output_path}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"escriptize: env={config.env} target={config.target} strip={config.strip}")

    t0: float = time.perf_counter()
    entries: dict[str, bytes] = read_units(collect_units(config, logger=logger))
    t1: float = time.perf_counter()
    total_bytes: int = sum(len(v) for v in entries.values())
    logger.info(
        f"escriptize: read {len(entries)} entries ({total_bytes / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s"
    )

    entries = strip_entries(entries, policy=config.strip, logger=logger)

    compile_config: list = read_config(config.config_path, env=config.env, target=config.target)
    runtime_config: RuntimeConfig | None = read_runtime_config(config.config_path)
    launcher_path, launcher_binary = generate_launcher(
        config,
        compile_config=compile_config,
        runtime_config=runtime_config,
        compile_module=compile_module,
        logger=logger,
    )
    entries[launcher_path] = launcher_binary

    t_pack0: float = time.perf_counter()
    archive: bytes = pack_archive(entries, compresslevel=config.compresslevel)
    t_pack1: float = time.perf_counter()
    logger.info(
        f"escriptize: archive built ({len(archive) / (1024 * 1024):.1f} MiB) in {t_pack1 - t_pack0:.2f}s"
    )

    header: bytes = render_header(
        launcher=str(launcher_module(config.app)),
        shebang=config.shebang,
        comment=config.comment,
        emu_args=config.emu_args,
    )
    write_escript(config.output_path, header + archive)

    t_total1: float = time.perf_counter()
    logger.info(f"escriptize: generated escript {config.output_path} with env={config.env}")
    logger.info(f"escriptize: done in {t_total1 - t_total0:.2f}s")
    return config.output_path
