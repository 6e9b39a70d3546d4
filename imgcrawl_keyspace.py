# imgcrawl_keyspace.py
# IMGCRAWL KEYSPACE
# Version: 1.0.0 |

"""
IMGCRAWL KEYSPACE
=================
Partitioning and enumeration of the identifier keyspace.

An identifier is a fixed-length string over an ordered alphabet. Templates are
tuples of the same length where a position is either a concrete character or
the UNCONSTRAINED marker. Templates are never mutated: each step of the
enumeration derives a new tuple.

Lanes own disjoint first characters. A lane walks its start template first
(honouring any resume suffix), then every first character at
rank + stride, rank + 2*stride, ... with the rest of the template open.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple

# =========================================================
# KEYSPACE CONSTANTS
# =========================================================

# Characters allowed in identifiers, in enumeration order
DEFAULT_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    "0123456789"
)

# Placeholder for positions the enumeration is free to fill
UNCONSTRAINED = "-"

Template = Tuple[str, ...]


# =========================================================
# ALPHABET
# =========================================================
@dataclass(frozen=True)
class Alphabet:
    """Ordered, duplicate-free set of identifier characters."""
    chars: str = DEFAULT_ALPHABET
    _ranks: Dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.chars:
            raise ValueError("Alphabet must not be empty")
        if UNCONSTRAINED in self.chars:
            raise ValueError(f"Alphabet must not contain the marker {UNCONSTRAINED!r}")
        ranks = {}
        for i, c in enumerate(self.chars):
            if c in ranks:
                raise ValueError(f"Duplicate alphabet character: {c!r}")
            ranks[c] = i
        object.__setattr__(self, "_ranks", ranks)

    def __len__(self) -> int:
        return len(self.chars)

    def __getitem__(self, index: int) -> str:
        return self.chars[index]

    def __contains__(self, char: str) -> bool:
        return char in self._ranks

    def rank(self, char: str) -> int:
        """Position of `char` in the alphabet; unknown characters rank 0."""
        return self._ranks.get(char, 0)


# =========================================================
# LANE ASSIGNMENT
# =========================================================
@dataclass(frozen=True)
class LaneAssignment:
    """
    Work owned by a single worker thread.

    Attributes:
        lane: 0-based lane index
        start: Starting template, position 0 always concrete
        stride: Rank distance between this lane's first characters
        first_rank: Alphabet rank of start[0]
    """
    lane: int
    start: Template
    stride: int
    first_rank: int

    @property
    def start_string(self) -> str:
        return "".join(self.start)


def normalize_start(raw: str, length: int) -> Template:
    """
    Truncate or pad a user-supplied start string to `length` positions.

    Args:
        raw: Start string, possibly empty
        length: Configured identifier length

    Returns:
        Template with missing positions set to UNCONSTRAINED
    """
    if length < 1:
        raise ValueError(f"Identifier length must be positive, got {length}")
    raw = raw[:length]
    return tuple(raw) + (UNCONSTRAINED,) * (length - len(raw))


def partition_keyspace(raw_start: str, length: int, max_workers: int,
                       alphabet: Alphabet = Alphabet()) -> List[LaneAssignment]:
    """
    Split the keyspace into one assignment per lane.

    Args:
        raw_start: Requested starting identifier (may be shorter than length)
        length: Identifier length
        max_workers: Worker ceiling
        alphabet: Identifier alphabet

    Returns:
        Assignments whose first characters are pairwise distinct
    """
    if max_workers < 1:
        raise ValueError(f"Worker count must be positive, got {max_workers}")

    unknown = [c for c in raw_start if c not in alphabet]
    if unknown:
        raise ValueError(f"Start string has characters outside the alphabet: {unknown}")

    normalized = normalize_start(raw_start, length)
    start_rank = alphabet.rank(raw_start[0]) if raw_start else 0

    # never more lanes than remaining first characters
    num_lanes = min(max_workers, len(alphabet) - start_rank)

    return [
        LaneAssignment(
            lane=i,
            start=(alphabet[start_rank + i],) + normalized[1:],
            stride=num_lanes,
            first_rank=start_rank + i,
        )
        for i in range(num_lanes)
    ]


def lane_templates(assignment: LaneAssignment, alphabet: Alphabet = Alphabet()) -> Iterator[Template]:
    """Yield every template a lane enumerates, in order."""
    yield assignment.start

    length = len(assignment.start)
    rank = assignment.first_rank + assignment.stride
    while rank < len(alphabet):
        yield (alphabet[rank],) + (UNCONSTRAINED,) * (length - 1)
        rank += assignment.stride


# =========================================================
# ENUMERATION ENGINE
# =========================================================
def _with_position(template: Template, index: int, char: str, keep_tail: bool) -> Template:
    tail = template[index + 1:] if keep_tail else (UNCONSTRAINED,) * (len(template) - index - 1)
    return template[:index] + (char,) + tail


def _descend(template: Template, index: int, alphabet: Alphabet) -> Iterator[str]:
    if index >= len(template):
        yield "".join(template)
        return

    pinned = template[index]
    start = alphabet.rank(pinned) if pinned != UNCONSTRAINED else 0

    for rank in range(start, len(alphabet)):
        # resume constraints below this position only hold for the first branch
        child = _with_position(template, index, alphabet[rank], keep_tail=(rank == start))
        yield from _descend(child, index + 1, alphabet)


def enumerate_identifiers(template: Template, alphabet: Alphabet = Alphabet()) -> Iterator[str]:
    """
    Lazily produce every completion of `template` in ascending rank order.

    Position 0 is taken as fixed. Each later position starts at the rank of
    its concrete character when one is given, otherwise at rank 0.

    Args:
        template: Template with a concrete first position
        alphabet: Identifier alphabet

    Yields:
        Complete identifiers, depth-first
    """
    if not template or template[0] == UNCONSTRAINED:
        raise ValueError("Template must have a concrete first position")
    for char in template:
        if char != UNCONSTRAINED and char not in alphabet:
            raise ValueError(f"Template character outside the alphabet: {char!r}")
    return _descend(tuple(template), 1, alphabet)
