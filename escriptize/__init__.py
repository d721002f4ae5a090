"""escriptize.

A small build utility that packages a compiled Erlang/Elixir project and its
dependencies into a single executable escript.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
