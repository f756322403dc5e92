# domain/seeding.py
from __future__ import annotations

import random
from dataclasses import replace
from typing import Optional, Sequence

from domain.enums import SeedingMode
from domain.models import Participant


def next_power_of_two(n: int) -> int:
    if n <= 1:
        return 1
    return 1 << (n - 1).bit_length()


def seeded_positions(n: int) -> list[int]:
    """
    Standard tournament seeding positions list (length n, n is power of two).
    Example n=8 => [1,8,4,5,2,7,3,6]
    Consecutive pairs are the round 1 matches; the better seed is always first.
    """
    if n <= 1:
        return [1]
    if n == 2:
        return [1, 2]
    prev = seeded_positions(n // 2)
    out: list[int] = []
    for s in prev:
        out.append(s)
        out.append(n + 1 - s)
    return out


def seed_participants(
    participants: Sequence[Participant],
    mode: SeedingMode = SeedingMode.STANDARD,
    *,
    rng_seed: Optional[int] = None,
) -> list[Participant]:
    """
    Orders participants for placement and renumbers seeds 1..N.

      - standard: explicit seeds first (ascending), then the given order
      - seeded:   skill rating descending, unrated last, given order breaks ties
      - random:   shuffled; reproducible when rng_seed is given
    """
    indexed = list(enumerate(participants))

    if mode == SeedingMode.SEEDED:
        indexed.sort(
            key=lambda ip: (
                ip[1].skill_rating is None,
                -(ip[1].skill_rating or 0.0),
                ip[0],
            )
        )
    elif mode == SeedingMode.RANDOM:
        rng = random.Random(rng_seed)
        rng.shuffle(indexed)
    else:
        indexed.sort(key=lambda ip: (ip[1].seed is None, ip[1].seed or 0, ip[0]))

    return [replace(p, seed=i) for i, (_idx, p) in enumerate(indexed, start=1)]


def group_label(index: int) -> str:
    # A..Z, then AA, AB, ...
    label = ""
    index += 1
    while index > 0:
        index, rem = divmod(index - 1, 26)
        label = chr(65 + rem) + label
    return label


def serpentine_groups(participants: Sequence[Participant], group_count: int) -> dict[str, list[Participant]]:
    """
    Distributes seeded participants snake-style so adjacent seeds land in different groups.
    2 groups, seeds 1..8 => A: 1,4,5,8  B: 2,3,6,7
    """
    groups: dict[str, list[Participant]] = {group_label(i): [] for i in range(group_count)}
    labels = list(groups.keys())
    for idx, p in enumerate(participants):
        row, col = divmod(idx, group_count)
        g = labels[col] if row % 2 == 0 else labels[group_count - 1 - col]
        groups[g].append(replace(p, group=g))
    return groups
