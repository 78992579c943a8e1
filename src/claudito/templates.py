"""Prompt template loading and rendering using Jinja2."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template
from jinja2.sandbox import SandboxedEnvironment


def _templates_dir() -> Path:
    return Path(__file__).resolve().parent / "templates"


@lru_cache(maxsize=1)
def _env() -> Environment:
    loader = FileSystemLoader(str(_templates_dir()))
    env = Environment(
        loader=loader,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    env.globals["enumerate"] = enumerate
    env.globals["len"] = len
    return env


def load_template(name: str) -> Template:
    return _env().get_template(name)


def render_template(name: str, context: dict[str, Any]) -> str:
    return load_template(name).render(**context)


def render_string(source: str, context: dict[str, Any]) -> str:
    """Render a user-supplied template string (e.g. the agent prompt setting).

    User text is rendered in a sandbox so it cannot reach Python internals.
    """
    return _sandbox().from_string(source).render(**context)


@lru_cache(maxsize=1)
def _sandbox() -> SandboxedEnvironment:
    return SandboxedEnvironment(autoescape=False, trim_blocks=True, lstrip_blocks=True)
