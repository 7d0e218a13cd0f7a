"""Placeholder substitution for script commands.

Script commands may reference user-supplied values as ``{{name}}``.
Unknown placeholders are left as they are, so a missing value shows up
literally in the executed command instead of silently disappearing.
"""

import re
from collections.abc import Mapping

from pakky_installer.items import PromptSpec

_TOKEN = re.compile(r'\{\{([^}]*)\}\}')


def substitute(command: str, values: Mapping[str, str]) -> str:
    """Replace every ``{{name}}`` in `command` present in `values`.

    Whitespace around the name is ignored (``{{ name }}`` is ``name``).
    """

    def _replace(match: re.Match) -> str:
        key = match.group(1).strip()
        if key in values:
            return str(values[key])
        return match.group(0)

    return _TOKEN.sub(_replace, command)


def find_variables(command: str) -> list[str]:
    """Names of the placeholders in `command`, in order of appearance."""
    names: list[str] = []
    for match in _TOKEN.finditer(command):
        name = match.group(1).strip()
        if name not in names:
            names.append(name)
    return names


def resolve_values(
    prompts: Mapping[str, PromptSpec], provided: Mapping[str, str]
) -> dict[str, str]:
    """Fill in prompt defaults for values the user did not provide."""
    values = {
        name: prompt.default
        for name, prompt in prompts.items()
        if prompt.default is not None
    }
    values.update(provided)
    return values
