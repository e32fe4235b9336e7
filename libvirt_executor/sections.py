"""GitLab collapsible job log sections.

See https://docs.gitlab.com/ee/ci/jobs/#custom-collapsible-sections
"""

import re
import time
from contextlib import contextmanager
from typing import Callable, Iterator

import click


_ESC_CLEAR = "\x1b[0K"
_SECTION_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def section_name(value: str) -> str:
    return _SECTION_NAME.sub("_", value).strip("_") or "section"


def section_start(name: str, title: str, now: Callable[[], float] = time.time) -> str:
    return f"{_ESC_CLEAR}section_start:{int(now())}:{section_name(name)}\r{_ESC_CLEAR}{title}"


def section_end(name: str, now: Callable[[], float] = time.time) -> str:
    return f"{_ESC_CLEAR}section_end:{int(now())}:{section_name(name)}\r{_ESC_CLEAR}"


@contextmanager
def section(name: str, title: str) -> Iterator[None]:
    # The end marker is skipped on failure; GitLab closes open sections itself.
    click.echo(section_start(name, title))
    yield
    click.echo(section_end(name))
