"""Runtime library resolution.

Embedding Elixir (and the runtime applications a project needs) requires
knowing where those applications live. The search path is resolved from, in
order:

- Explicit ``--lib-dir`` overrides.
- The ``ERL_LIBS`` environment variable.
- Probing the installed ``erl`` and ``elixir`` executables (``native``).

The result is a plain list of directories, each holding ``<app>[-vsn]/ebin``.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import subprocess


class RuntimeResolutionError(ValueError):
    """Raised when the runtime library search path cannot be resolved."""


@dataclass(frozen=True, slots=True)
class RuntimePaths:
    """Resolved runtime search path.

    :ivar lib_dirs: Library directories, highest priority first.
    """

    lib_dirs: tuple[pathlib.Path, ...]


_ERL_PROBE: list[str] = [
    "-noshell",
    "-eval",
    'io:format("~s", [code:lib_dir()]), halt().',
]

_ELIXIR_PROBE: list[str] = [
    "-e",
    "IO.write(Path.dirname(:code.lib_dir(:elixir)))",
]


def resolve_runtime_paths(
    *,
    lib_dir_overrides: list[pathlib.Path],
    erl_libs: str | None,
    probe: bool,
    logger: logging.Logger | None = None,
) -> RuntimePaths:
    """Resolve the runtime library search path.

    :param lib_dir_overrides: Directories given explicitly by the user.
    :param erl_libs: Value of ``ERL_LIBS`` (``os.pathsep``-separated), if any.
    :param probe: Ask the installed ``erl``/``elixir`` for their library roots.
    :param logger: Optional logger for debug output.
    :returns: Resolved search path (de-duplicated, order preserved).
    :raises RuntimeResolutionError: If an explicit override does not exist.
    """

    if logger is None:
        logger = logging.getLogger("escriptize")

    dirs: list[pathlib.Path] = []
    for d in lib_dir_overrides:
        if d.is_dir() is False:
            raise RuntimeResolutionError(f"Runtime library directory does not exist: {d}")
        dirs.append(d)

    if erl_libs is not None and len(erl_libs) > 0:
        for part in erl_libs.split(os.pathsep):
            if len(part) == 0:
                continue
            p: pathlib.Path = pathlib.Path(part)
            if p.is_dir() is True:
                dirs.append(p)
            elif logger.isEnabledFor(logging.DEBUG) is True:
                logger.debug(f"escriptize: ignoring missing ERL_LIBS entry {p}")

    if probe is True:
        for exe, args in (("elixir", _ELIXIR_PROBE), ("erl", _ERL_PROBE)):
            found: pathlib.Path | None = _probe_lib_dir(exe, args, logger=logger)
            if found is not None:
                dirs.append(found)

    unique: list[pathlib.Path] = []
    seen: set[pathlib.Path] = set()
    for d in dirs:
        key: pathlib.Path = d.resolve()
        if key in seen:
            continue
        seen.add(key)
        unique.append(d)

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"escriptize: runtime lib_dirs={[str(d) for d in unique]}")
    return RuntimePaths(lib_dirs=tuple(unique))


def _probe_lib_dir(exe: str, args: list[str], *, logger: logging.Logger) -> pathlib.Path | None:
    """Ask an installed runtime executable for its library root.

    :param exe: Executable name (``erl`` or ``elixir``).
    :param args: Arguments that print the library root to stdout.
    :param logger: Logger for debug output.
    :returns: Library root, or ``None`` if the executable is missing or fails.
    """

    path: str | None = shutil.which(exe)
    if path is None:
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"escriptize: {exe} not found on PATH; skipping probe")
        return None

    try:
        proc = subprocess.run(
            [path, *args],
            check=False,
            capture_output=True,
            text=True,
            timeout=60,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"escriptize: probing {exe} failed: {e}")
        return None

    if proc.returncode != 0:
        logger.warning(f"escriptize: probing {exe} failed (exit={proc.returncode})")
        return None

    out: str = proc.stdout.strip()
    if len(out) == 0:
        return None
    root: pathlib.Path = pathlib.Path(out)
    if root.is_dir() is False:
        return None
    return root
