"""Win/draw/loss standings derived from a match log."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .months import filter_by_month, parse_played_at, InvalidMonthError

POINTS_FOR_WIN = 3
POINTS_FOR_DRAW = 1
POINTS_FOR_LOSS = 0

# Column names for each side of a match, per participant kind.
MATCH_FIELDS: Dict[str, Dict[str, str]] = {
    "player": {
        "a": "player1_id",
        "b": "player2_id",
        "score_a": "player1_score",
        "score_b": "player2_score",
    },
    "team": {
        "a": "team1_id",
        "b": "team2_id",
        "score_a": "team1_score",
        "score_b": "team2_score",
    },
}

_STAT_FIELDS = ("matches_played", "wins", "draws", "losses", "points")


class MatchValidationError(ValueError):
    """A match record that cannot be aggregated.

    ``index`` is the record's position in the submitted batch and
    ``match_id`` its identifier when it has one.
    """

    def __init__(self, message: str, index: Optional[int] = None, match_id: Any = None):
        super().__init__(message)
        self.index = index
        self.match_id = match_id


def match_fields(kind: str) -> Dict[str, str]:
    try:
        return MATCH_FIELDS[kind]
    except KeyError:
        raise ValueError(f"Unknown participant kind: {kind!r}") from None


def _check_score(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_match(match: Dict[str, Any], kind: str = "player", index: Optional[int] = None) -> None:
    """Raise :class:`MatchValidationError` if ``match`` is malformed."""
    fields = match_fields(kind)
    if not isinstance(match, dict):
        raise MatchValidationError("Match record must be a mapping", index=index)
    match_id = match.get("id")
    a_id = match.get(fields["a"])
    b_id = match.get(fields["b"])
    if a_id in (None, "") or b_id in (None, ""):
        raise MatchValidationError(
            f"Match is missing {fields['a']} or {fields['b']}", index=index, match_id=match_id
        )
    for key, value in ((fields["a"], a_id), (fields["b"], b_id)):
        if not isinstance(value, (str, uuid.UUID)):
            raise MatchValidationError(
                f"{key} must be a string or UUID, got {type(value).__name__}",
                index=index,
                match_id=match_id,
            )
    if a_id == b_id:
        raise MatchValidationError(
            "A match needs two different participants", index=index, match_id=match_id
        )
    for key in (fields["score_a"], fields["score_b"]):
        if not _check_score(match.get(key)):
            raise MatchValidationError(
                f"{key} must be a non-negative integer, got {match.get(key)!r}",
                index=index,
                match_id=match_id,
            )
    try:
        parse_played_at(match.get("played_at"))
    except InvalidMonthError as exc:
        raise MatchValidationError(str(exc), index=index, match_id=match_id) from exc


def validate_matches(matches: Sequence[Dict[str, Any]], kind: str = "player") -> None:
    for idx, match in enumerate(matches):
        validate_match(match, kind, index=idx)


def _seed_row(participant: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": participant.get("id"),
        "name": participant.get("name"),
        "nickname": participant.get("nickname"),
        "emoji": participant.get("emoji"),
        "matches_played": 0,
        "wins": 0,
        "draws": 0,
        "losses": 0,
        "points": 0,
    }


def _seed_rows(participants: Iterable[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    rows: Dict[Any, Dict[str, Any]] = {}
    for idx, participant in enumerate(participants):
        pid = participant.get("id") if isinstance(participant, dict) else None
        if pid in (None, ""):
            raise MatchValidationError(f"Participant at position {idx} has no id", index=idx)
        if pid not in rows:
            rows[pid] = _seed_row(participant)
    return rows


def _rank(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # sorted() is stable, so equal rows keep roster order.
    return sorted(rows, key=lambda r: (-r["points"], -r["wins"]))


def compute_standings(
    participants: Iterable[Dict[str, Any]],
    matches: Iterable[Dict[str, Any]],
    month_filter: Optional[str] = None,
    kind: str = "player",
    warnings: Optional[List[Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """Aggregate matches into one standings row per participant.

    Args:
        participants: Full roster of the given kind. Every roster entry gets a
            row, including those without matches in the selected window.
        matches: Full match history of the given kind.
        month_filter: ``YYYY-MM`` key, or ``None``/``"all"`` for every match.
        kind: ``"player"`` or ``"team"``; selects the match side columns.
        warnings: Optional list that receives one entry per match skipped
            because it references a participant missing from the roster.

    Returns:
        Rows sorted by points then wins (both descending). Ties keep roster
        order.

    Raises:
        MatchValidationError: a participant or match record is malformed. No
            partial result is produced.
        InvalidMonthError: ``month_filter`` is not a valid month key.
    """
    fields = match_fields(kind)
    matches = list(matches)
    validate_matches(matches, kind)
    rows = _seed_rows(participants)

    for match in filter_by_month(matches, month_filter):
        a_id = match[fields["a"]]
        b_id = match[fields["b"]]
        missing = [pid for pid in (a_id, b_id) if pid not in rows]
        if missing:
            if warnings is not None:
                for pid in missing:
                    warnings.append(
                        {
                            "match_id": match.get("id"),
                            "participant_id": pid,
                            "reason": "unknown_participant",
                        }
                    )
            continue

        row_a, row_b = rows[a_id], rows[b_id]
        score_a, score_b = match[fields["score_a"]], match[fields["score_b"]]
        row_a["matches_played"] += 1
        row_b["matches_played"] += 1
        if score_a > score_b:
            row_a["wins"] += 1
            row_a["points"] += POINTS_FOR_WIN
            row_b["losses"] += 1
            row_b["points"] += POINTS_FOR_LOSS
        elif score_a < score_b:
            row_b["wins"] += 1
            row_b["points"] += POINTS_FOR_WIN
            row_a["losses"] += 1
            row_a["points"] += POINTS_FOR_LOSS
        else:
            row_a["draws"] += 1
            row_b["draws"] += 1
            row_a["points"] += POINTS_FOR_DRAW
            row_b["points"] += POINTS_FOR_DRAW

    return _rank(rows.values())


def merge_standings(
    participants: Iterable[Dict[str, Any]],
    tables: Iterable[Iterable[Dict[str, Any]]],
) -> List[Dict[str, Any]]:
    """Add up standings computed over disjoint partitions (e.g. months).

    Rows are seeded from ``participants`` so the result matches a single
    :func:`compute_standings` call over the union of the partitions. Rows for
    ids absent from the roster are ignored.
    """
    rows = _seed_rows(participants)
    for table in tables:
        for part in table:
            row = rows.get(part.get("id"))
            if row is None:
                continue
            for key in _STAT_FIELDS:
                row[key] += int(part.get(key, 0))
    return _rank(rows.values())


__all__ = [
    "MATCH_FIELDS",
    "MatchValidationError",
    "POINTS_FOR_DRAW",
    "POINTS_FOR_LOSS",
    "POINTS_FOR_WIN",
    "compute_standings",
    "match_fields",
    "merge_standings",
    "validate_match",
    "validate_matches",
]
