"""Compiled-unit collection.

Each component (the project, a dependency, a runtime application) is a
directory laid out as::

    <name>/ebin/*.app
    <name>/ebin/*.beam
    <name>/priv/**          (only bundled when the component is in the inclusion set)

Collected files are paired with their archive path, which is the file's path
relative to the component directory's parent (``my_app/ebin/my_app.beam``).
"""

from collections.abc import Callable, Iterable
import logging
import pathlib
import re

from escriptize.config import BuildConfig
from escriptize.errors import BuildError
from escriptize.terms import Atom, TermParseError, parse_terms


# Always present on the target; never embedded through the dependency walk.
BASE_APPS: frozenset[str] = frozenset({"kernel", "stdlib", "elixir"})

# Applications shipped with Elixir that are embedded when the project needs them.
EXTRA_APPS: frozenset[str] = frozenset({"eex", "ex_unit", "iex", "logger", "mix"})

UnitPair = tuple[str, pathlib.Path]


def component_files(app_path: pathlib.Path, *, include_priv: bool) -> list[UnitPair]:
    """Collect one component's compiled units and, optionally, its ``priv/`` files.

    :param app_path: Component directory (holding ``ebin/``).
    :param include_priv: Also collect every regular, non-hidden file under ``priv/``.
    :returns: ``(archive_path, source_path)`` pairs.
    :raises BuildError: If a directory cannot be listed.
    """

    ebin: pathlib.Path = app_path / "ebin"
    paths: list[pathlib.Path] = []
    try:
        if ebin.is_dir() is True:
            for p in sorted(ebin.iterdir()):
                if p.suffix in (".app", ".beam") and p.is_file() is True:
                    paths.append(p)

        if include_priv is True:
            priv: pathlib.Path = app_path / "priv"
            if priv.is_dir() is True:
                for p in sorted(priv.rglob("*")):
                    # Hidden files (.gitkeep and friends) are never bundled.
                    if any(part.startswith(".") for part in p.relative_to(priv).parts):
                        continue
                    if p.is_file() is True:
                        paths.append(p)
    except OSError as e:
        raise BuildError(f"Could not list {app_path}: {e}") from e

    apps_dir: pathlib.Path = app_path.parent
    return [(p.relative_to(apps_dir).as_posix(), p) for p in paths]


def _version_key(vsn: str) -> tuple[tuple[int, ...], str]:
    """Sort key for a directory version suffix such as ``1.10.2``.

    Numeric parts compare as numbers; the raw text breaks ties.
    """

    nums: tuple[int, ...] = tuple(int(part) for part in re.findall(r"\d+", vsn))
    return (nums, vsn)


def locate_app(name: str, search_dirs: Iterable[pathlib.Path]) -> pathlib.Path | None:
    """Find an application's directory on the search path.

    Both ``<dir>/<name>`` and versioned ``<dir>/<name>-<vsn>`` layouts are
    accepted; for versioned layouts the highest version wins.

    :param name: Application name.
    :param search_dirs: Library directories, highest priority first.
    :returns: Application directory, or ``None`` if not found.
    """

    for d in search_dirs:
        plain: pathlib.Path = d / name
        if (plain / "ebin" / f"{name}.app").is_file() is True:
            return plain
        versioned: list[pathlib.Path] = sorted(
            (p for p in d.glob(f"{name}-*") if (p / "ebin" / f"{name}.app").is_file() is True),
            key=lambda p: _version_key(p.name[len(name) + 1 :]),
        )
        if len(versioned) > 0:
            return versioned[-1]
    return None


def read_app_spec(app_file: pathlib.Path) -> dict[str, object]:
    """Read an ``.app`` resource file.

    :param app_file: Path to ``<name>.app``.
    :returns: Application properties keyed by name.
    :raises BuildError: If the file is not a valid application resource.
    """

    try:
        text: str = app_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise BuildError(f"Could not read {app_file}: {e}") from e

    try:
        terms: list[object] = parse_terms(text)
    except TermParseError as e:
        raise BuildError(f"Invalid application resource file {app_file}: {e}") from e

    if len(terms) == 0:
        raise BuildError(f"Empty application resource file: {app_file}")
    spec: object = terms[0]
    if (
        not isinstance(spec, tuple)
        or len(spec) != 3
        or spec[0] != Atom("application")
        or not isinstance(spec[2], list)
    ):
        raise BuildError(f"Invalid application resource file {app_file}: expected {{application, Name, Props}}")

    props: dict[str, object] = {}
    for item in spec[2]:
        if isinstance(item, tuple) and len(item) == 2 and isinstance(item[0], Atom):
            props[str(item[0])] = item[1]
    return props


def declared_dependencies_from(search_dirs: list[pathlib.Path]) -> Callable[[str], list[str]]:
    """Build the adjacency query used by :func:`runtime_apps`.

    :param search_dirs: Directories searched for ``<name>.app`` files.
    :returns: Function mapping an application name to its declared
        ``applications`` followed by ``included_applications``. Applications
        without a resource file have no declared dependencies.
    """

    def declared_dependencies(name: str) -> list[str]:
        app_dir: pathlib.Path | None = locate_app(name, search_dirs)
        if app_dir is None:
            return []
        props: dict[str, object] = read_app_spec(app_dir / "ebin" / f"{name}.app")
        deps: list[str] = []
        for key in ("applications", "included_applications"):
            value: object = props.get(key, [])
            if isinstance(value, list):
                deps.extend(str(v) for v in value)
        return deps

    return declared_dependencies


def runtime_apps(app: str, declared_dependencies: Callable[[str], list[str]]) -> list[str]:
    """Find the bundled runtime applications a project needs.

    Walks the declared dependency graph from ``app``. Base applications end the
    walk, :data:`EXTRA_APPS` are collected (and not expanded), everything else
    is expanded through its own declared dependencies.

    :param app: Starting application.
    :param declared_dependencies: Adjacency query.
    :returns: Runtime applications in first-discovery order, without duplicates.
    """

    found: list[str] = []
    visited: set[str] = set()

    def visit(name: str) -> None:
        if name in visited:
            return
        visited.add(name)
        if name in BASE_APPS:
            return
        if name in EXTRA_APPS:
            found.append(name)
            return
        for dep in declared_dependencies(name):
            visit(dep)

    visit(app)
    return found


def project_files(config: BuildConfig) -> list[UnitPair]:
    return component_files(config.app_path, include_priv=config.app in config.include_priv_for)


def dependency_names(config: BuildConfig) -> list[str]:
    """List the dependencies to bundle.

    :param config: Build config.
    :returns: Explicit dependencies, or every other component in the build tree.
    :raises BuildError: If an explicit dependency has not been built, or the build tree cannot be listed.
    """

    if config.deps is not None:
        for name in config.deps:
            if (config.build_lib_path / name / "ebin").is_dir() is False:
                raise BuildError(
                    f"Could not find dependency {name} in {config.build_lib_path}; has it been compiled?"
                )
        return list(config.deps)

    if config.build_lib_path.is_dir() is False:
        return []
    names: list[str] = []
    try:
        for p in sorted(config.build_lib_path.iterdir()):
            if p.name == config.app:
                continue
            if (p / "ebin").is_dir() is True:
                names.append(p.name)
    except OSError as e:
        raise BuildError(f"Could not list {config.build_lib_path}: {e}") from e
    return names


def deps_files(config: BuildConfig) -> list[UnitPair]:
    pairs: list[UnitPair] = []
    for name in dependency_names(config):
        pairs.extend(
            component_files(config.build_lib_path / name, include_priv=name in config.include_priv_for)
        )
    return pairs


def core_files(config: BuildConfig, *, logger: logging.Logger) -> list[UnitPair]:
    """Collect Elixir and the runtime applications the project needs.

    :param config: Build config.
    :param logger: Logger for progress output.
    :returns: Collected pairs (empty unless ``embed_elixir`` is set).
    :raises BuildError: If a runtime application cannot be found.
    """

    if config.embed_elixir is False:
        return []

    search_dirs: list[pathlib.Path] = [config.build_lib_path, *config.lib_dirs]
    extra: list[str] = runtime_apps(config.app, declared_dependencies_from(search_dirs))
    names: list[str] = ["elixir", *extra]
    logger.info(f"escriptize: embedding runtime apps {', '.join(names)}")

    pairs: list[UnitPair] = []
    for name in names:
        app_dir: pathlib.Path | None = locate_app(name, config.lib_dirs)
        if app_dir is None:
            raise BuildError(f"Could not find application {name}")
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"escriptize: {name} -> {app_dir}")
        pairs.extend(component_files(app_dir, include_priv=name in config.include_priv_for))
    return pairs


def consolidated_units(path: pathlib.Path) -> dict[str, pathlib.Path]:
    """Map base names of consolidated units to their paths.

    :param path: Consolidation directory.
    :returns: Base name to path (empty if the directory does not exist).
    :raises BuildError: If the directory cannot be listed.
    """

    if path.is_dir() is False:
        return {}
    try:
        return {p.name: p for p in sorted(path.iterdir()) if p.is_file() is True}
    except OSError as e:
        raise BuildError(f"Could not list {path}: {e}") from e


def replace_consolidated_paths(
    pairs: list[UnitPair],
    consolidated: dict[str, pathlib.Path],
) -> list[UnitPair]:
    """Point units at their consolidated variants where one exists.

    Archive paths are unchanged so the consolidated unit replaces the generic
    one in its usual location instead of being bundled alongside it.

    :param pairs: Collected pairs.
    :param consolidated: Base name to consolidated unit path.
    :returns: Rewritten pairs.
    """

    return [(archive_path, consolidated.get(src.name, src)) for archive_path, src in pairs]


def collect_units(config: BuildConfig, *, logger: logging.Logger) -> list[UnitPair]:
    """Run collection for the project, its dependencies and the runtime.

    :param config: Build config.
    :param logger: Logger for progress output.
    :returns: Collected pairs, consolidated units applied.
    :raises BuildError: If a required component cannot be found.
    """

    pairs: list[UnitPair] = [*project_files(config), *deps_files(config), *core_files(config, logger=logger)]

    if config.consolidate_protocols is True:
        consolidated: dict[str, pathlib.Path] = consolidated_units(config.resolved_consolidation_path())
        logger.info(f"escriptize: using {len(consolidated)} consolidated protocol units")
        pairs = replace_consolidated_paths(pairs, consolidated)

    logger.info(f"escriptize: collected {len(pairs)} files")
    return pairs


def read_units(pairs: list[UnitPair]) -> dict[str, bytes]:
    """Read collected files into an ordered entry mapping.

    A later pair with an archive path already present replaces the earlier
    payload, keeping the earlier position.

    :param pairs: Collected pairs.
    :returns: Archive path to payload.
    :raises BuildError: If a file cannot be read.
    """

    entries: dict[str, bytes] = {}
    for archive_path, src in pairs:
        try:
            entries[archive_path] = src.read_bytes()
        except OSError as e:
            raise BuildError(f"Could not read {src}: {e}") from e
    return entries
