"""Pure operations over an install queue.

The queue is owned by the caller. None of the functions here keep any
state: each one takes the current queue and returns a new list (or, for
`merge`, possibly the very same object when nothing changes).

Positions are 1-based and, after any mutating operation, equal to the
item's index in the returned list plus one.
"""

import math
import random
import re
import string
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from logging import getLogger

from pakky_installer.items import (
    InstallItem,
    ItemAction,
    ItemKind,
    ItemStatus,
    PackageItem,
    PromptSpec,
    ScriptItem,
)

log = getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits

DEFAULT_DESCRIPTIONS = {
    ItemKind.CASK: 'Application',
    ItemKind.SCRIPT: 'Custom script',
    ItemKind.MAS: 'Mac App Store app',
}
DEFAULT_DESCRIPTION = 'CLI tool'


@dataclass(frozen=True)
class AppendResult:
    """Outcome of `add` and `add_multiple`.

    `added` holds the new items with their positions already assigned;
    the caller appends them to its queue. `duplicates` holds the ids of
    the rejected items.
    """

    added: list[InstallItem] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)


def _normalize(name: str | None) -> str:
    return str(name if name is not None else '').strip().lower()


def generate_id(kind: ItemKind, name: str) -> str:
    """Build the id of an item from its kind and name.

    Package ids are deterministic (``formula:git``). Script ids get a
    millisecond timestamp and a random suffix, since the same script may
    be queued more than once.
    """
    kind = ItemKind(kind)
    base = _WHITESPACE.sub('-', _normalize(name))
    if kind == ItemKind.SCRIPT:
        suffix = ''.join(random.choices(_SUFFIX_ALPHABET, k=7))
        return f'script:{base}-{time.time_ns() // 1_000_000}-{suffix}'
    return f'{kind.value}:{base}'


def create_item(
    kind: ItemKind,
    name: str,
    *,
    description: str | None = None,
    position: float | None = None,
    version: str | None = None,
    required: bool = False,
    post_install: Sequence[str] = (),
    extensions: Sequence[str] = (),
    commands: Sequence[str] = (),
    prompt_for_input: Mapping[str, PromptSpec] | None = None,
    action: ItemAction = ItemAction.INSTALL,
    installed: bool = False,
) -> InstallItem:
    """Create a queue item with consistent defaults.

    Parameters
    ----------
    kind : ItemKind
        Package source of the item, or ``script``.
    name : str
        Display and lookup name. Surrounding whitespace is removed.
    description : str, optional
        Falls back to a kind-specific default when empty.
    installed : bool, optional
        Whether the caller already knows the package is present. Such
        items start as ``already_installed`` instead of ``pending``.
    commands, prompt_for_input
        Only valid for scripts.
    extensions
        Only valid for casks.

    Returns
    -------
    InstallItem
        A `ScriptItem` for scripts, a `PackageItem` otherwise.
    """
    kind = ItemKind(kind)
    name = str(name if name is not None else '')
    common = {
        'id': generate_id(kind, name),
        'name': name.strip(),
        'status': (
            ItemStatus.ALREADY_INSTALLED if installed else ItemStatus.PENDING
        ),
        'position': position,
        'description': description
        or DEFAULT_DESCRIPTIONS.get(kind, DEFAULT_DESCRIPTION),
        'version': version,
        'required': required,
        'action': ItemAction(action),
        'post_install': tuple(post_install or ()),
    }
    if kind == ItemKind.SCRIPT:
        return ScriptItem(
            **common,
            commands=tuple(commands or ()),
            prompt_for_input=prompt_for_input or {},
        )
    if commands or prompt_for_input:
        raise ValueError(
            f"Only script items can carry commands, not '{kind}'"
        )
    return PackageItem(
        **common, kind=kind, extensions=tuple(extensions or ())
    )


def is_duplicate(queue: Sequence[InstallItem], item_id: str) -> bool:
    """True if an item with exactly `item_id` is in `queue`."""
    return any(item.id == item_id for item in queue)


def is_duplicate_by_type_and_name(
    queue: Sequence[InstallItem], kind: ItemKind, name: str
) -> bool:
    """True if `queue` holds an item of `kind` with the same name.

    Names are compared case-insensitively after trimming.
    """
    kind = ItemKind(kind)
    normalized = _normalize(name)
    return any(
        item.kind == kind and _normalize(item.name) == normalized
        for item in queue
    )


def reindex(queue: Sequence[InstallItem]) -> list[InstallItem]:
    """Renumber positions to ``1..N``.

    If any item carries a position, items are first stable-sorted by it
    (missing positions last). Otherwise the current order is kept.
    """
    if any(item.position is not None for item in queue):
        ordered = sorted(queue, key=lambda item: item.sort_key)
    else:
        ordered = list(queue)
    return [
        item.with_position(index)
        for index, item in enumerate(ordered, start=1)
    ]


def add(
    queue: Sequence[InstallItem], kind: ItemKind, name: str, **params
) -> AppendResult:
    """Create a single item to be appended to `queue`.

    A package whose kind and name already appear in the queue is
    rejected. Scripts are never rejected.
    """
    kind = ItemKind(kind)
    if kind != ItemKind.SCRIPT and is_duplicate_by_type_and_name(
        queue, kind, name
    ):
        duplicate = f'{kind.value}:{_normalize(name)}'
        log.debug('Rejected duplicate queue item %s', duplicate)
        return AppendResult(added=[], duplicates=[duplicate])

    params['position'] = len(queue) + 1
    return AppendResult(added=[create_item(kind, name, **params)])


def add_multiple(
    queue: Sequence[InstallItem], items: Iterable[InstallItem]
) -> AppendResult:
    """Prepare several items to be appended to `queue`.

    Packages already in the queue, or repeated within `items`, are
    reported as duplicates; the first occurrence in `items` wins.
    Positions continue from the end of the queue.
    """
    added: list[InstallItem] = []
    duplicates: list[str] = []
    seen: set[tuple[ItemKind, str]] = set()
    next_position = len(queue) + 1

    for item in items:
        if not item.is_script:
            key = (item.kind, _normalize(item.name))
            if key in seen or is_duplicate_by_type_and_name(
                queue, item.kind, item.name
            ):
                duplicates.append(item.id)
                continue
            seen.add(key)

        added.append(item.with_position(next_position))
        next_position += 1

    return AppendResult(added=added, duplicates=duplicates)


def remove(queue: Sequence[InstallItem], item_id: str) -> list[InstallItem]:
    """Drop the item with `item_id` and renumber the rest."""
    return reindex([item for item in queue if item.id != item_id])


def move(
    queue: Sequence[InstallItem], item_id: str, new_position: float
) -> Sequence[InstallItem]:
    """Move an item to `new_position` (1-based).

    The target is clamped into ``[1, len(queue)]``. The input is
    returned unchanged when the id is unknown, the target is NaN, or the
    item is already in place.
    """
    index = next(
        (i for i, item in enumerate(queue) if item.id == item_id), None
    )
    if index is None or math.isnan(new_position):
        return queue

    clamped = max(1, min(new_position, len(queue)))
    target = int(clamped) - 1
    if target == index:
        return queue

    result = list(queue)
    moved = result.pop(index)
    result.insert(target, moved)
    # array order is the only source of truth from here on
    return reindex([item.with_position(None) for item in result])


def merge(
    existing: Sequence[InstallItem], incoming: Sequence[InstallItem]
) -> Sequence[InstallItem]:
    """Append `incoming` items whose ids are not in `existing`.

    Positions of the appended items are offset by the largest existing
    position. When nothing is appended, `existing` itself is returned.
    """
    if not incoming:
        return existing

    existing_ids = {item.id for item in existing}
    new_items = [item for item in incoming if item.id not in existing_ids]
    if not new_items:
        return existing
    if not existing:
        return list(new_items)

    offset = max(
        (
            item.position
            for item in existing
            if item.position is not None and math.isfinite(item.position)
        ),
        default=0,
    )
    offset = max(offset, 0)
    return [
        *existing,
        *(
            item.with_position((item.position or 0) + offset)
            for item in new_items
        ),
    ]
