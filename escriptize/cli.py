"""Command line interface for escriptize."""

import argparse
import logging
import os
import pathlib
import sys

from escriptize.beam import BeamError, strip_beam
from escriptize.builder import build_escript
from escriptize.config import (
    DEFAULT_SHEBANG,
    LANGUAGES,
    STRIP_DISABLED,
    BuildConfig,
    StripPolicy,
)
from escriptize.errors import BuildError
from escriptize.runtime import RuntimePaths, RuntimeResolutionError, resolve_runtime_paths
from escriptize.terms import TermParseError


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the escriptize logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("escriptize")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_logging_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    :returns: Parser with ``build`` and ``strip`` subcommands.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="escriptize",
        description="Package a compiled Erlang/Elixir project into a single executable escript.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build an escript from compiled project output.",
    )
    p_build.add_argument(
        "--app",
        type=str,
        required=True,
        help="Project application name.",
    )
    p_build.add_argument(
        "--main-module",
        type=str,
        default=None,
        help="Module implementing main/1 (e.g. MyApp.CLI, or :my_cli for an Erlang module).",
    )
    p_build.add_argument(
        "--language",
        choices=LANGUAGES,
        default="elixir",
        help="Project language. Erlang projects do not embed Elixir by default.",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output path for the escript. Defaults to the app name.",
    )
    p_build.add_argument(
        "--env",
        type=str,
        default=os.environ.get("MIX_ENV", "prod"),
        help="Build environment label (defaults to $MIX_ENV or 'prod').",
    )
    p_build.add_argument(
        "--target",
        type=str,
        default=os.environ.get("MIX_TARGET", "host"),
        help="Build target label (defaults to $MIX_TARGET or 'host').",
    )
    p_build.add_argument(
        "--build-path",
        type=pathlib.Path,
        default=None,
        help="Directory holding compiled components. Defaults to _build/<env>/lib.",
    )
    p_build.add_argument(
        "--dep",
        action="append",
        default=None,
        help="Dependency to bundle. Repeatable. Defaults to every other component in the build path.",
    )
    start_group = p_build.add_mutually_exclusive_group()
    start_group.add_argument(
        "--start-app",
        type=str,
        default=None,
        help="Application started before main/1 runs. Defaults to the project app.",
    )
    start_group.add_argument(
        "--no-start-app",
        action="store_true",
        help="Do not start any application before main/1 runs.",
    )
    p_build.add_argument(
        "--no-strip",
        action="store_true",
        help="Keep debug info and documentation chunks in .beam files.",
    )
    p_build.add_argument(
        "--strip-keep",
        action="append",
        default=[],
        metavar="CHUNK",
        help="Chunk to keep while stripping (e.g. Docs, Dbgi). Repeatable.",
    )
    p_build.add_argument(
        "--compress-beams",
        action="store_true",
        help="Gzip each stripped .beam file.",
    )
    p_build.add_argument(
        "--include-priv-for",
        action="append",
        default=[],
        metavar="APP",
        help="Application whose priv/ directory is bundled. Repeatable.",
    )
    p_build.add_argument(
        "--embed-elixir",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Embed Elixir and the runtime apps the project uses. Defaults to on for Elixir projects.",
    )
    p_build.add_argument(
        "--shebang",
        type=str,
        default=DEFAULT_SHEBANG,
        help="Interpreter directive line.",
    )
    p_build.add_argument(
        "--comment",
        type=str,
        default="",
        help="Comment line following the shebang.",
    )
    p_build.add_argument(
        "--emu-args",
        type=str,
        default="",
        help="Emulator arguments embedded in the escript.",
    )
    p_build.add_argument(
        "--consolidate-protocols",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Replace protocol modules with their consolidated versions. Defaults to on for Elixir projects.",
    )
    p_build.add_argument(
        "--consolidation-path",
        type=pathlib.Path,
        default=None,
        help="Directory of consolidated protocols. Defaults to <build-path>/<app>/consolidated.",
    )
    p_build.add_argument(
        "--config-path",
        type=pathlib.Path,
        default=pathlib.Path("config/sys.config"),
        help="Compile-time application config (Erlang terms). runtime.exs is read from the same directory.",
    )
    p_build.add_argument(
        "--lib-dir",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Runtime library directory searched for Elixir and its apps. Repeatable.",
    )
    p_build.add_argument(
        "--no-probe-runtime",
        action="store_true",
        help="Do not ask the installed erl/elixir for their library directories.",
    )
    p_build.add_argument(
        "--compresslevel",
        type=int,
        default=6,
        help="Deflate compression level for the archive (0-9).",
    )
    _add_logging_args(p_build)

    p_strip = subparsers.add_parser(
        "strip",
        help="Strip debug info and documentation chunks from .beam files.",
    )
    p_strip.add_argument(
        "files",
        type=pathlib.Path,
        nargs="+",
        help=".beam files to strip (rewritten in place unless --output is given).",
    )
    p_strip.add_argument(
        "--keep",
        action="append",
        default=[],
        metavar="CHUNK",
        help="Chunk to keep. Repeatable.",
    )
    p_strip.add_argument(
        "--compress",
        action="store_true",
        help="Gzip the stripped file.",
    )
    p_strip.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output path (only with a single input file).",
    )
    _add_logging_args(p_strip)

    return parser


def _config_from_args(ns: argparse.Namespace, *, runtime: RuntimePaths) -> BuildConfig:
    """Translate parsed ``build`` arguments into a :class:`BuildConfig`.

    :param ns: Parsed arguments.
    :param runtime: Resolved runtime search path.
    :returns: Build config.
    """

    build_path: pathlib.Path = ns.build_path
    if build_path is None:
        build_path = pathlib.Path("_build") / ns.env / "lib"

    start_app: str | None = ns.start_app if ns.start_app is not None else ns.app
    if ns.no_start_app is True:
        start_app = None

    strip: StripPolicy
    if ns.no_strip is True:
        strip = STRIP_DISABLED
    else:
        strip = StripPolicy(enabled=True, keep=tuple(ns.strip_keep), compress=ns.compress_beams)

    embed_elixir: bool = ns.embed_elixir if ns.embed_elixir is not None else ns.language == "elixir"
    consolidate: bool = (
        ns.consolidate_protocols if ns.consolidate_protocols is not None else ns.language == "elixir"
    )

    return BuildConfig(
        app=ns.app,
        main_module=ns.main_module,
        output_path=ns.output if ns.output is not None else pathlib.Path(ns.app),
        build_lib_path=build_path,
        language=ns.language,
        start_app=start_app,
        strip=strip,
        include_priv_for=frozenset(ns.include_priv_for),
        embed_elixir=embed_elixir,
        deps=tuple(ns.dep) if ns.dep is not None else None,
        shebang=ns.shebang,
        comment=ns.comment,
        emu_args=ns.emu_args,
        consolidate_protocols=consolidate,
        consolidation_path=ns.consolidation_path,
        config_path=ns.config_path,
        env=ns.env,
        target=ns.target,
        lib_dirs=runtime.lib_dirs,
        compresslevel=ns.compresslevel,
    )


def _run_strip(ns: argparse.Namespace, *, logger: logging.Logger) -> int:
    """Run the ``strip`` subcommand.

    :param ns: Parsed arguments.
    :param logger: Logger for progress output.
    :returns: Exit code.
    """

    if ns.output is not None and len(ns.files) != 1:
        logger.error("escriptize: --output requires exactly one input file")
        return 2

    for path in ns.files:
        dest: pathlib.Path = ns.output if ns.output is not None else path
        try:
            data: bytes = path.read_bytes()
            stripped: bytes = strip_beam(data, keep=tuple(ns.keep), compress=ns.compress)
            dest.write_bytes(stripped)
        except (OSError, BeamError) as e:
            logger.error(f"escriptize: cannot strip {path}: {e}")
            return 1

        logger.info(f"escriptize: stripped {path} ({len(data)} -> {len(stripped)} bytes)")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the escriptize CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    if ns.command == "strip":
        return _run_strip(ns, logger=logger)

    if ns.command == "build":
        try:
            embed: bool = ns.embed_elixir if ns.embed_elixir is not None else ns.language == "elixir"
            runtime: RuntimePaths = resolve_runtime_paths(
                lib_dir_overrides=ns.lib_dir,
                erl_libs=os.environ.get("ERL_LIBS"),
                probe=embed is True and ns.no_probe_runtime is False,
                logger=logger,
            )
            build_escript(_config_from_args(ns, runtime=runtime), logger=logger)
        except (BuildError, RuntimeResolutionError, TermParseError) as e:
            logger.error(f"escriptize: error: {e}")
            return 1
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")
