import logging


def test_skipped_match_reference_is_logged(client, memory_store, caplog):
    memory_store.add_participant("player", id="p1", name="Alice")
    memory_store.add_participant("player", id="p2", name="Bob")
    memory_store.add_match(
        "player", id="m-ok", player1_id="p1", player2_id="p2",
        player1_score=10, player2_score=2, played_at="2025-05-01T18:00:00Z",
    )
    # Roster snapshot no longer contains this player
    memory_store.add_match(
        "player", id="m-orphan", player1_id="p1", player2_id="p-deleted",
        player1_score=10, player2_score=0, played_at="2025-05-02T18:00:00Z",
    )

    caplog.set_level(logging.WARNING)
    res = client.get("/api/matches/consolidated")
    assert res.status_code == 200
    stats = {row["id"]: row for row in res.get_json()["playerStats"]}
    assert stats["p1"]["matches_played"] == 1

    messages = [r.getMessage() for r in caplog.records]
    assert any(
        m.startswith("standings_skipped_match kind=player")
        and "match_id=m-orphan" in m
        and "participant_id=p-deleted" in m
        for m in messages
    )


def test_clean_history_logs_nothing(client, memory_store, caplog):
    memory_store.add_participant("team", id="t1", name="Reds")
    caplog.set_level(logging.WARNING)
    assert client.get("/api/stats?type=team").status_code == 200
    assert not [r for r in caplog.records if "standings_skipped_match" in r.getMessage()]
