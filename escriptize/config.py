"""Build configuration and application config handling.

Two kinds of configuration live here:

- :class:`BuildConfig`, the resolved project settings for one escript build.
  It is read once at build start and never mutated.
- Application configuration (``{App, [{Key, Value}]}`` lists) that the
  launcher loads into the runtime's application environment at start. The
  compile-time layer is read from Erlang term files at build time; the runtime
  layer is kept as source text and evaluated on the target machine.
"""

from dataclasses import dataclass, field
import pathlib

from escriptize.errors import BuildError
from escriptize.terms import Atom, TermParseError, parse_term


LANGUAGES: tuple[str, ...] = ("elixir", "erlang")

DEFAULT_SHEBANG: str = "#! /usr/bin/env escript\n"


@dataclass(frozen=True, slots=True)
class StripPolicy:
    """How compiled units are stripped before packing.

    :ivar enabled: ``False`` disables stripping entirely.
    :ivar keep: Auxiliary chunk names to retain on top of the significant ones.
    :ivar compress: Gzip each stripped unit.
    """

    enabled: bool = True
    keep: tuple[str, ...] = ()
    compress: bool = False


STRIP_DISABLED: StripPolicy = StripPolicy(enabled=False)
STRIP_DEFAULT: StripPolicy = StripPolicy(enabled=True)


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Runtime configuration script embedded into the launcher.

    :ivar path: Path label passed to the evaluator (relative, e.g. ``config/runtime.exs``).
    :ivar source: Script source text.
    """

    path: str
    source: str


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Resolved settings for one escript build.

    :ivar app: Project application name.
    :ivar main_module: Module implementing ``main/1`` (``None`` is a configuration error).
    :ivar output_path: Where the escript is written.
    :ivar build_lib_path: Build output tree holding ``<app>/ebin`` per component.
    :ivar language: ``elixir`` or ``erlang``.
    :ivar start_app: Application started before ``main/1`` runs, or ``None``.
    :ivar strip: Chunk stripping policy.
    :ivar include_priv_for: Applications whose ``priv/`` directory is bundled.
    :ivar embed_elixir: Embed Elixir and the runtime applications the project needs.
    :ivar deps: Dependency names, or ``None`` for every component in ``build_lib_path``.
    :ivar shebang: Interpreter directive line.
    :ivar comment: Text for the comment line.
    :ivar emu_args: Extra emulator arguments.
    :ivar consolidate_protocols: Substitute consolidated protocol units.
    :ivar consolidation_path: Directory holding consolidated units.
    :ivar config_path: Compile-time application config file.
    :ivar env: Build environment label (e.g. ``prod``).
    :ivar target: Build target label (e.g. ``host``).
    :ivar lib_dirs: Runtime library directories searched for runtime applications.
    :ivar compresslevel: Deflate level used for the archive.
    """

    app: str
    main_module: str | None
    output_path: pathlib.Path
    build_lib_path: pathlib.Path
    language: str = "elixir"
    start_app: str | None = None
    strip: StripPolicy = STRIP_DEFAULT
    include_priv_for: frozenset[str] = frozenset()
    embed_elixir: bool = True
    deps: tuple[str, ...] | None = None
    shebang: str = DEFAULT_SHEBANG
    comment: str = ""
    emu_args: str = ""
    consolidate_protocols: bool = True
    consolidation_path: pathlib.Path | None = None
    config_path: pathlib.Path = pathlib.Path("config/sys.config")
    env: str = "prod"
    target: str = "host"
    lib_dirs: tuple[pathlib.Path, ...] = field(default_factory=tuple)
    compresslevel: int = 6

    @property
    def app_path(self) -> pathlib.Path:
        return self.build_lib_path / self.app

    def resolved_consolidation_path(self) -> pathlib.Path:
        """Return the consolidated-units directory, defaulting to ``<app>/consolidated``.

        :returns: Consolidation directory.
        """

        if self.consolidation_path is not None:
            return self.consolidation_path
        return self.app_path / "consolidated"


def _is_keyword(value: object) -> bool:
    """Check whether a value is a keyword list (``[{atom, term}]``).

    :param value: Candidate value.
    :returns: ``True`` for keyword lists, including the empty list.
    """

    if not isinstance(value, list):
        return False
    for item in value:
        if not isinstance(item, tuple) or len(item) != 2 or not isinstance(item[0], Atom):
            return False
    return True


def _keyword_merge(left: list, right: list, *, deep: bool) -> list:
    """Merge two keyword lists; keys in ``right`` win and move to its position.

    :param left: Base keyword list.
    :param right: Overriding keyword list.
    :param deep: Deep-merge values that are keyword lists on both sides.
    :returns: Merged keyword list.
    """

    right_keys: set[object] = {k for k, _ in right}
    left_values: dict[object, object] = {}
    merged: list = []
    for key, value in left:
        if key in right_keys:
            left_values[key] = value
        else:
            merged.append((key, value))

    for key, value in right:
        if deep is True and key in left_values:
            old: object = left_values[key]
            if _is_keyword(old) is True and _is_keyword(value) is True:
                value = _keyword_merge(old, value, deep=True)  # type: ignore[arg-type]
        merged.append((key, value))
    return merged


def merge_config(base: list, override: list) -> list:
    """Merge two application config lists.

    Applications present in both are deep-merged key by key; values from
    ``override`` win on conflicts.

    :param base: Base config (``[{App, Keyword}]``).
    :param override: Overriding config.
    :returns: Merged config.
    """

    override_apps: dict[object, object] = {app: kw for app, kw in override}
    merged: list = []
    for app, kw in base:
        if app not in override_apps:
            merged.append((app, kw))
    base_apps: dict[object, object] = {app: kw for app, kw in base}
    for app, kw in override:
        if app in base_apps:
            kw = _keyword_merge(base_apps[app], kw, deep=True)  # type: ignore[arg-type]
        merged.append((app, kw))
    return merged


def _read_config_file(path: pathlib.Path) -> list:
    """Read and validate one config term file.

    :param path: ``.config`` file.
    :returns: Config list.
    :raises BuildError: If the file is malformed.
    """

    try:
        text: str = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise BuildError(f"Could not read {path}: {e}") from e

    try:
        value: object = parse_term(text)
    except TermParseError as e:
        raise BuildError(f"Invalid config file {path}: {e}") from e

    if not isinstance(value, list):
        raise BuildError(f"Config file {path} must contain a list of {{App, Options}} tuples.")
    for item in value:
        ok: bool = (
            isinstance(item, tuple)
            and len(item) == 2
            and isinstance(item[0], Atom)
            and _is_keyword(item[1])
        )
        if ok is False:
            raise BuildError(
                f"Config file {path} must contain a list of {{App, Options}} tuples; got {item!r}."
            )
    return value


def read_config(path: pathlib.Path, *, env: str, target: str) -> list:
    """Read compile-time application config for an environment and target.

    ``config/sys.config`` is read first; ``config/sys.<env>.config`` and then
    ``config/sys.<target>.config`` are merged over it when they exist.

    :param path: Base config file.
    :param env: Build environment label.
    :param target: Build target label.
    :returns: Merged config, or ``[]`` if the base file does not exist.
    :raises BuildError: If any config file is malformed.
    """

    if path.is_file() is False:
        return []

    config: list = _read_config_file(path)
    stem: str = path.name[: -len(path.suffix)] if len(path.suffix) > 0 else path.name
    suffix: str = path.suffix if len(path.suffix) > 0 else ".config"
    for label in (env, target):
        overlay: pathlib.Path = path.with_name(f"{stem}.{label}{suffix}")
        if overlay.is_file() is True:
            config = merge_config(config, _read_config_file(overlay))
    return config


def read_runtime_config(config_path: pathlib.Path) -> RuntimeConfig | None:
    """Read ``runtime.exs`` next to the compile-time config, if present.

    :param config_path: Compile-time config path.
    :returns: Runtime config, or ``None`` if the file does not exist.
    """

    runtime_path: pathlib.Path = config_path.parent / "runtime.exs"
    if runtime_path.is_file() is False:
        return None
    try:
        source: str = runtime_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise BuildError(f"Could not read {runtime_path}: {e}") from e
    label: str = (pathlib.PurePosixPath(config_path.parent.name) / "runtime.exs").as_posix()
    return RuntimeConfig(path=label, source=source)
