import random

import pytest

from foosball.months import InvalidMonthError, compute_month_options
from foosball.standings import MatchValidationError, compute_standings, merge_standings, validate_match


def _player(pid, name=None):
    return {"id": pid, "name": name or pid, "nickname": f"{pid}-nick", "emoji": "👤"}


def _match(mid, a, b, score_a, score_b, played_at="2024-01-15T12:00:00Z"):
    return {
        "id": mid,
        "player1_id": a,
        "player2_id": b,
        "player1_score": score_a,
        "player2_score": score_b,
        "played_at": played_at,
    }


ROSTER = [_player("P1"), _player("P2"), _player("P3")]


def _by_id(rows):
    return {r["id"]: r for r in rows}


def test_single_win_ranks_winner_first_and_keeps_idle_player():
    rows = compute_standings(ROSTER, [_match("M1", "P1", "P2", 5, 3)])
    assert [r["id"] for r in rows] == ["P1", "P2", "P3"]
    p1, p2, p3 = rows
    assert (p1["matches_played"], p1["wins"], p1["draws"], p1["losses"], p1["points"]) == (1, 1, 0, 0, 3)
    assert (p2["matches_played"], p2["wins"], p2["draws"], p2["losses"], p2["points"]) == (1, 0, 0, 1, 0)
    assert (p3["matches_played"], p3["points"]) == (0, 0)


def test_display_fields_are_carried_through():
    rows = compute_standings(ROSTER, [])
    assert rows[0] == {
        "id": "P1",
        "name": "P1",
        "nickname": "P1-nick",
        "emoji": "👤",
        "matches_played": 0,
        "wins": 0,
        "draws": 0,
        "losses": 0,
        "points": 0,
    }


def test_draw_gives_one_point_each_and_keeps_roster_order():
    rows = compute_standings(ROSTER, [_match("M1", "P1", "P2", 4, 4)])
    assert [r["id"] for r in rows] == ["P1", "P2", "P3"]
    for row in rows[:2]:
        assert (row["matches_played"], row["draws"], row["points"]) == (1, 1, 1)


def test_away_win_credits_second_side():
    rows = _by_id(compute_standings(ROSTER, [_match("M1", "P1", "P2", 2, 10)]))
    assert rows["P2"]["wins"] == 1 and rows["P2"]["points"] == 3
    assert rows["P1"]["losses"] == 1 and rows["P1"]["points"] == 0


def test_month_filter_selects_single_month():
    matches = [
        _match("M1", "P1", "P2", 10, 5, "2024-01-10T12:00:00Z"),
        _match("M2", "P1", "P2", 3, 10, "2024-02-10T12:00:00Z"),
    ]
    all_rows = _by_id(compute_standings(ROSTER, matches, "all"))
    for pid in ("P1", "P2"):
        row = all_rows[pid]
        assert (row["matches_played"], row["wins"], row["losses"], row["points"]) == (2, 1, 1, 3)

    jan = _by_id(compute_standings(ROSTER, matches, "2024-01"))
    assert (jan["P1"]["matches_played"], jan["P1"]["wins"], jan["P1"]["points"]) == (1, 1, 3)
    assert (jan["P2"]["matches_played"], jan["P2"]["losses"], jan["P2"]["points"]) == (1, 1, 0)


def test_unknown_participant_is_skipped_and_reported():
    matches = [_match("M1", "P1", "GHOST", 5, 0), _match("M2", "P1", "P2", 5, 0)]
    warnings = []
    rows = _by_id(compute_standings(ROSTER, matches, warnings=warnings))
    assert rows["P1"]["matches_played"] == 1
    assert "GHOST" not in rows
    assert warnings == [{"match_id": "M1", "participant_id": "GHOST", "reason": "unknown_participant"}]


def test_unknown_participant_without_warning_list_does_not_fail():
    rows = compute_standings(ROSTER, [_match("M1", "X", "Y", 1, 0)])
    assert all(r["matches_played"] == 0 for r in rows)


def test_empty_inputs():
    assert compute_standings([], [], None) == []
    assert compute_month_options([]) == [{"value": "all", "label": "All"}]


def test_ranking_breaks_point_ties_on_wins():
    # P3: 1 win (3 pts). P2: 3 draws (3 pts). P3 must rank above P2.
    roster = ROSTER + [_player("P4")]
    matches = [
        _match("M1", "P2", "P1", 1, 1),
        _match("M2", "P2", "P4", 1, 1),
        _match("M3", "P2", "P1", 2, 2),
        _match("M4", "P3", "P4", 5, 0),
    ]
    rows = compute_standings(roster, matches)
    assert [r["id"] for r in rows[:2]] == ["P3", "P2"]
    assert rows[0]["points"] == rows[1]["points"] == 3


def test_team_kind_uses_team_columns():
    teams = [{"id": "T1", "name": "Reds", "emoji": "🔴"}, {"id": "T2", "name": "Blues", "emoji": "🔵"}]
    matches = [
        {"id": "TM1", "team1_id": "T2", "team2_id": "T1", "team1_score": 10, "team2_score": 7,
         "played_at": "2024-04-01T18:00:00Z"},
    ]
    rows = compute_standings(teams, matches, kind="team")
    assert [r["id"] for r in rows] == ["T2", "T1"]
    assert rows[0]["nickname"] is None
    assert rows[0]["emoji"] == "🔵"


def test_unknown_kind_rejected():
    with pytest.raises(ValueError):
        compute_standings(ROSTER, [], kind="referee")


def test_duplicate_roster_ids_appear_once():
    rows = compute_standings(ROSTER + [_player("P1", name="dup")], [])
    assert [r["id"] for r in rows] == ["P1", "P2", "P3"]
    assert rows[0]["name"] == "P1"


def test_input_is_not_mutated():
    matches = [_match("M1", "P1", "P2", 5, 3)]
    snapshot = [dict(m) for m in matches]
    roster = [dict(p) for p in ROSTER]
    compute_standings(roster, matches)
    assert matches == snapshot
    assert roster == ROSTER


@pytest.mark.parametrize(
    "bad",
    [
        {"player1_id": None},
        {"player2_id": ""},
        {"player2_id": "P1"},
        {"player1_id": ["P1"]},
        {"player2_id": 7},
        {"player1_score": -1},
        {"player2_score": "3"},
        {"player1_score": 2.5},
        {"player1_score": True},
        {"played_at": "yesterday"},
        {"played_at": None},
    ],
)
def test_invalid_match_rejects_whole_batch(bad):
    good = _match("M1", "P1", "P2", 1, 0)
    broken = {**_match("M2", "P1", "P2", 1, 0), **bad}
    with pytest.raises(MatchValidationError) as info:
        compute_standings(ROSTER, [good, broken])
    assert info.value.index == 1
    assert info.value.match_id == "M2"


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        validate_match({"player1_id": "P1"})


def test_roster_entry_without_id_is_invalid():
    with pytest.raises(MatchValidationError):
        compute_standings([{"name": "anonymous"}], [])


def test_invalid_month_filter():
    with pytest.raises(InvalidMonthError):
        compute_standings(ROSTER, [], "2024-13")


# -- properties over generated histories -----------------------------------

def _random_history(seed, n_players=6, n_matches=80):
    rng = random.Random(seed)
    roster = [_player(f"P{i}") for i in range(n_players)]
    matches = []
    for i in range(n_matches):
        a, b = rng.sample(range(n_players), 2)
        month = rng.randint(1, 12)
        year = rng.choice([2023, 2024])
        matches.append(
            _match(
                f"M{i}",
                f"P{a}",
                f"P{b}",
                rng.randint(0, 10),
                rng.randint(0, 10),
                f"{year}-{month:02d}-{rng.randint(1, 28):02d}T{rng.randint(0, 23):02d}:00:00Z",
            )
        )
    return roster, matches


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_conservation_points_and_completeness(seed):
    roster, matches = _random_history(seed)
    for option in compute_month_options(matches):
        rows = compute_standings(roster, matches, option["value"])
        assert sorted(r["id"] for r in rows) == sorted(p["id"] for p in roster)
        for row in rows:
            assert row["matches_played"] == row["wins"] + row["draws"] + row["losses"]
            assert row["points"] == 3 * row["wins"] + row["draws"]


@pytest.mark.parametrize("seed", [4, 5])
def test_determinism(seed):
    roster, matches = _random_history(seed)
    assert compute_standings(roster, matches, "all") == compute_standings(roster, matches, "all")


@pytest.mark.parametrize("seed", [6, 7])
def test_ranking_order(seed):
    roster, matches = _random_history(seed)
    rows = compute_standings(roster, matches)
    keys = [(r["points"], r["wins"]) for r in rows]
    assert keys == sorted(keys, reverse=True)
    # Equal (points, wins) rows keep roster order
    order = {p["id"]: i for i, p in enumerate(roster)}
    for prev, cur in zip(rows, rows[1:]):
        if (prev["points"], prev["wins"]) == (cur["points"], cur["wins"]):
            assert order[prev["id"]] < order[cur["id"]]


@pytest.mark.parametrize("seed", [8, 9])
def test_month_partition_counts_each_match_once(seed):
    roster, matches = _random_history(seed)
    total = sum(r["matches_played"] for r in compute_standings(roster, matches, "all"))
    per_month = 0
    for option in compute_month_options(matches)[1:]:
        per_month += sum(r["matches_played"] for r in compute_standings(roster, matches, option["value"]))
    assert total == per_month == 2 * len(matches)


@pytest.mark.parametrize("seed", [10, 11])
def test_merging_monthly_tables_equals_single_run(seed):
    roster, matches = _random_history(seed)
    monthly = [
        compute_standings(roster, matches, option["value"])
        for option in compute_month_options(matches)[1:]
    ]
    assert merge_standings(roster, monthly) == compute_standings(roster, matches, "all")
