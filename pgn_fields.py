# pgn_fields.py
#
# Single-pass field extraction from Lichess PGN text, one record per game.
#
# Conventions:
# - a tag matches a line when its prefix pattern is a literal substring of the line.
# - header values are taken positionally: everything after the prefix minus the 2-char terminator ("]).
# - the terminal tag ([%eval) closes the game; its value is the payload of the rightmost marker on that line.
# - a game still open at end of input is dropped.

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple


# ----------------------------
# Tags
# ----------------------------

TERMINATOR_LEN = 2  # closing '"]' of a header line

EVAL_MARKER = "%eval "
CLOCK_MARKER = "%clk "


@dataclass(frozen=True)
class TagSpec:
    name: str
    pattern: str
    terminal: bool = False
    # When set, the value is the payload of the rightmost marker on the line.
    marker: Optional[str] = None


def header_tag(name: str) -> TagSpec:
    return TagSpec(name=name, pattern=f'[{name} "')


EVAL_TAG = TagSpec(name="Eval", pattern="[%eval", terminal=True, marker=EVAL_MARKER)
CLOCK_TAG = TagSpec(name="Clock", pattern="[%clk", marker=CLOCK_MARKER)

# Output column order.
LICHESS_TAGS: Tuple[TagSpec, ...] = (
    header_tag("Event"),
    header_tag("White"),
    header_tag("Black"),
    header_tag("WhiteElo"),
    header_tag("BlackElo"),
    header_tag("TimeControl"),
    header_tag("Result"),
    header_tag("Site"),
    header_tag("Termination"),
    EVAL_TAG,
)

LICHESS_TAGS_WITH_CLOCK: Tuple[TagSpec, ...] = LICHESS_TAGS + (CLOCK_TAG,)

Record = Dict[str, str]


# ----------------------------
# Field extraction
# ----------------------------

def extract_field(pattern: str, line: str) -> Optional[str]:
    """Return the text following `pattern` minus the last two characters of the line.

    None means the pattern is absent; an empty string means it is present with an empty value.
    The truncation is positional and does not look at the terminator itself.
    """
    idx = line.find(pattern)
    if idx == -1:
        return None
    start = idx + len(pattern)
    return line[start:len(line) - TERMINATOR_LEN]


def extract_last_annotation(line: str, marker: str) -> Optional[str]:
    idx = line.rfind(marker)
    if idx == -1:
        return None
    start = idx + len(marker)
    end = line.find("]", idx + 1)
    if end == -1:
        return line[start:]
    return line[start:end]


def extract_last_eval(line: str) -> Optional[str]:
    return extract_last_annotation(line, EVAL_MARKER)


def extract_last_clock(line: str) -> Optional[str]:
    return extract_last_annotation(line, CLOCK_MARKER)


def extract_value(tag: TagSpec, line: str) -> Tuple[bool, Optional[str]]:
    """Return (matched, value) for `tag` on `line`.

    Annotation tags go through the generic presence check first, so a line only
    yields an annotation payload when the tag's own pattern is on it. A matched
    annotation tag can still have no value when the marker itself is missing.
    """
    value = extract_field(tag.pattern, line)
    if value is None:
        return False, None
    if tag.marker is None:
        return True, value
    return True, extract_last_annotation(line, tag.marker)


# ----------------------------
# Game assembly
# ----------------------------

def _check_tags(tags: Sequence[TagSpec]) -> None:
    names = [t.name for t in tags]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate tag names: {names}")
    terminals = [t.name for t in tags if t.terminal]
    if len(terminals) != 1:
        raise ValueError(f"Exactly one terminal tag is required, got {terminals}")


class GameAssembler:
    """Accumulate tag values line by line and hand back a record when a game closes.

    One instance per input stream; feed() must see lines in order, without their newline.
    """

    def __init__(self, tags: Sequence[TagSpec] = LICHESS_TAGS) -> None:
        _check_tags(tags)
        self.tags: Tuple[TagSpec, ...] = tuple(tags)
        self._record: Record = {}
        self._closed = False

    def feed(self, line: str) -> Optional[Record]:
        # Annotation values only count when they sit on the line that closes the game.
        annotations: Record = {}
        for tag in self.tags:
            matched, value = extract_value(tag, line)
            if not matched:
                continue
            if tag.terminal:
                # Closing only depends on the pattern, not on a recoverable value.
                self._record[tag.name] = value or ""
                self._closed = True
            elif value is None:
                continue
            elif tag.marker is not None:
                annotations[tag.name] = value
            else:
                self._record[tag.name] = value

        if not self._closed:
            return None

        self._record.update(annotations)
        done = {t.name: self._record.get(t.name, "") for t in self.tags}
        self.reset()
        return done

    def reset(self) -> None:
        self._record = {}
        self._closed = False


def iter_records(lines: Iterable[str], tags: Sequence[TagSpec] = LICHESS_TAGS) -> Iterator[Record]:
    """Yield one record per terminated game in `lines`."""
    assembler = GameAssembler(tags)
    for line in lines:
        record = assembler.feed(line.rstrip("\r\n"))
        if record is not None:
            yield record


# ----------------------------
# Output rows
# ----------------------------

def header_row(tags: Sequence[TagSpec] = LICHESS_TAGS) -> List[str]:
    return [t.name for t in tags]


def format_row(record: Record, tags: Sequence[TagSpec] = LICHESS_TAGS) -> List[str]:
    return [record.get(t.name, "") for t in tags]
