"""Launcher generation.

Every escript carries one synthesized module, ``<app>_escript``, that the
emulator calls as the escript's entry point. It loads application config,
starts the application and hands the command line to the user's
``main/1``.

The launcher is rendered as Erlang source from a template and compiled by a
pluggable compiler (``erlc`` by default). There are two variants:

- :class:`ElixirLauncher` boots Elixir first, converts arguments to binaries,
  evaluates ``runtime.exs`` and runs ``main/1`` under Elixir's CLI wrapper so
  crashes are reported the usual way.
- :class:`ErlangLauncher` does none of that and calls ``main/1`` directly with
  the raw charlist arguments.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
import logging
import pathlib
import shutil
import subprocess
import tempfile
import textwrap

from escriptize.config import BuildConfig, RuntimeConfig
from escriptize.errors import BuildError
from escriptize.terms import Atom, module_atom, render_atom, render_binary, render_term


CompileFn = Callable[[str, str], bytes]


@dataclass(frozen=True, slots=True)
class LauncherSpec:
    """Everything a launcher template needs.

    :ivar module: Launcher module atom.
    :ivar main_module: Module whose ``main/1`` is called.
    :ivar start_app: Application to start, or ``None``.
    :ivar compile_config: Compile-time config, embedded as a literal.
    :ivar runtime_config: Runtime config script, or ``None``.
    :ivar env: Environment label passed to the runtime config evaluator.
    :ivar target: Target label passed to the runtime config evaluator.
    """

    module: Atom
    main_module: Atom
    start_app: Atom | None
    compile_config: list
    runtime_config: RuntimeConfig | None
    env: str
    target: str


def launcher_module(app: str) -> Atom:
    return Atom(f"{app}_escript")


_HEADER_TEMPLATE: str = textwrap.dedent(
    """\
    %% This module was generated by escriptize. Do not edit.
    -module(__ESC_MODULE__).
    -export([main/1]).
    -compile(nowarn_unused_function).

    """
)

_COMMON_TEMPLATE: str = textwrap.dedent(
    """\

    compile_config() ->
        __ESC_COMPILE_CONFIG__.

    load_config(Config) ->
        lists:foreach(
            fun({App, Kw}) ->
                lists:foreach(
                    fun({Key, Value}) -> application:set_env(App, Key, Value, [{persistent, true}]) end,
                    Kw
                )
            end,
            Config
        ),
        ok.

    __ESC_START_APP__

    io_error(Message) ->
        io:put_chars(standard_error, Message).
    """
)

_START_NOTHING_TEMPLATE: str = textwrap.dedent(
    """\
    start_app() ->
        ok."""
)

_START_APP_TEMPLATE: str = textwrap.dedent(
    """\
    start_app() ->
        case application:ensure_all_started(__ESC_APP__) of
            {ok, _} ->
                ok;
            {error, {App, Reason}} ->
                FormattedError =
                    case code:ensure_loaded('Elixir.Application') of
                        {module, 'Elixir.Application'} -> 'Elixir.Application':format_error(Reason);
                        {error, _} -> io_lib:format("~p", [Reason])
                    end,
                io_error([
                    "ERROR! Could not start application ",
                    erlang:atom_to_binary(App, utf8),
                    ": ",
                    FormattedError,
                    $\\n
                ]),
                erlang:halt(1)
        end."""
)

_ELIXIR_MAIN_TEMPLATE: str = textwrap.dedent(
    """\
    main(Args) ->
        case application:ensure_all_started(elixir) of
            {ok, _} ->
                Argv = [unicode:characters_to_binary(Arg) || Arg <- Args],
                'Elixir.System':argv(Argv),
                load_config(config()),
                start_app(),
                'Elixir.Kernel.CLI':run(fun(_) -> __ESC_MAIN__:main(Argv) end);
            Error ->
                io_error(["ERROR! Failed to start Elixir.\\n", io_lib:format("error: ~p~n", [Error])]),
                erlang:halt(1)
        end.
    """
)

_ERLANG_MAIN_TEMPLATE: str = textwrap.dedent(
    """\
    main(Args) ->
        load_config(config()),
        start_app(),
        __ESC_MAIN__:main(Args).
    """
)

_STATIC_CONFIG_TEMPLATE: str = textwrap.dedent(
    """\

    config() ->
        compile_config().
    """
)

_RUNTIME_CONFIG_TEMPLATE: str = textwrap.dedent(
    """\

    config() ->
        RuntimeConfig =
            'Elixir.Config.Reader':'eval!'(
                __ESC_RUNTIME_PATH__,
                __ESC_RUNTIME_SOURCE__,
                [{env, __ESC_ENV__}, {target, __ESC_TARGET__}, {imports, disabled}]
            ),
        'Elixir.Config.Reader':merge(compile_config(), RuntimeConfig).
    """
)


class Launcher(ABC):
    """Renders launcher source. Subclasses provide ``main/1`` and ``config/0``."""

    language: str = ""

    def render(self, spec: LauncherSpec) -> str:
        """Render the full launcher module.

        :param spec: Launcher inputs.
        :returns: Erlang source text.
        """

        start_app: str
        if spec.start_app is None:
            start_app = _START_NOTHING_TEMPLATE
        else:
            start_app = _START_APP_TEMPLATE.replace("__ESC_APP__", render_atom(spec.start_app))

        common: str = _COMMON_TEMPLATE
        common = common.replace("__ESC_COMPILE_CONFIG__", render_term(spec.compile_config))
        common = common.replace("__ESC_START_APP__", start_app)

        header: str = _HEADER_TEMPLATE.replace("__ESC_MODULE__", render_atom(spec.module))
        return header + self.render_main(spec) + self.render_config(spec) + common

    @abstractmethod
    def render_main(self, spec: LauncherSpec) -> str:
        """Render ``main/1``."""

    def render_config(self, spec: LauncherSpec) -> str:
        return _STATIC_CONFIG_TEMPLATE


class ElixirLauncher(Launcher):
    """Launcher for Elixir projects (the managed runtime)."""

    language = "elixir"

    def render_main(self, spec: LauncherSpec) -> str:
        return _ELIXIR_MAIN_TEMPLATE.replace("__ESC_MAIN__", render_atom(spec.main_module))

    def render_config(self, spec: LauncherSpec) -> str:
        if spec.runtime_config is None:
            return _STATIC_CONFIG_TEMPLATE

        out: str = _RUNTIME_CONFIG_TEMPLATE
        out = out.replace("__ESC_RUNTIME_PATH__", render_binary(spec.runtime_config.path.encode("utf-8")))
        out = out.replace("__ESC_RUNTIME_SOURCE__", render_binary(spec.runtime_config.source.encode("utf-8")))
        out = out.replace("__ESC_ENV__", render_atom(spec.env))
        out = out.replace("__ESC_TARGET__", render_atom(spec.target))
        return out


class ErlangLauncher(Launcher):
    """Launcher for plain Erlang projects. Runtime config is not evaluated."""

    language = "erlang"

    def render_main(self, spec: LauncherSpec) -> str:
        return _ERLANG_MAIN_TEMPLATE.replace("__ESC_MAIN__", render_atom(spec.main_module))


def launcher_for(language: str) -> Launcher:
    """Pick the launcher variant for a project language.

    :param language: ``elixir`` or ``erlang``.
    :returns: Launcher instance.
    :raises BuildError: For an unknown language.
    """

    if language == "elixir":
        return ElixirLauncher()
    if language == "erlang":
        return ErlangLauncher()
    raise BuildError(f"Unknown project language {language!r}; expected 'elixir' or 'erlang'.")


def erlc_compile(module: str, source: str) -> bytes:
    """Compile one Erlang module with ``erlc``.

    :param module: Module name (the source file is named after it).
    :param source: Erlang source text.
    :returns: Compiled unit bytes.
    :raises BuildError: If ``erlc`` is missing or compilation fails.
    """

    erlc: str | None = shutil.which("erlc")
    if erlc is None:
        raise BuildError("Could not find erlc on PATH; it is needed to compile the escript launcher.")

    with tempfile.TemporaryDirectory(prefix="escriptize_launcher_") as td:
        root: pathlib.Path = pathlib.Path(td)
        src_path: pathlib.Path = root / f"{module}.erl"
        src_path.write_text(source, encoding="utf-8")
        cmd: list[str] = [erlc, "-o", str(root), str(src_path)]
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        if proc.returncode != 0:
            detail: str = (proc.stderr or proc.stdout).strip()
            raise BuildError(f"erlc failed to compile {module} (exit={proc.returncode}):\n{detail}")
        beam_path: pathlib.Path = root / f"{module}.beam"
        if beam_path.is_file() is False:
            raise BuildError(f"erlc did not produce {beam_path.name}")
        return beam_path.read_bytes()


def generate_launcher(
    config: BuildConfig,
    *,
    compile_config: list,
    runtime_config: RuntimeConfig | None,
    compile_module: CompileFn,
    logger: logging.Logger,
) -> tuple[str, bytes]:
    """Render and compile the launcher for a build.

    :param config: Build config (``main_module`` must be set).
    :param compile_config: Compile-time application config.
    :param runtime_config: Runtime config script, if any.
    :param compile_module: Compiler taking ``(module, source)``.
    :param logger: Logger for progress output.
    :returns: ``(archive_path, unit_bytes)`` for the launcher.
    :raises BuildError: If compilation fails.
    """

    if config.main_module is None:
        raise BuildError("Internal error: launcher requested without a main module.")

    launcher: Launcher = launcher_for(config.language)
    if runtime_config is not None and launcher.language == "erlang":
        logger.warning(f"escriptize: {runtime_config.path} is ignored for erlang projects")

    spec: LauncherSpec = LauncherSpec(
        module=launcher_module(config.app),
        main_module=module_atom(config.main_module, config.language),
        start_app=Atom(config.start_app) if config.start_app is not None else None,
        compile_config=compile_config,
        runtime_config=runtime_config,
        env=config.env,
        target=config.target,
    )
    source: str = launcher.render(spec)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"escriptize: launcher source for {spec.module}:\n{source}")

    binary: bytes = compile_module(str(spec.module), source)
    return (f"{spec.module}.beam", binary)
