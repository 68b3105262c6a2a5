from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

import cli as admin_cli
from cli import Kind, _find_siblings, _neighbour_ranks, cli

runner = CliRunner()

SUBJECTS = [
    {"id": 1, "title": "Maths", "rank": "0|hzzzzr"},
    {"id": 2, "title": "Physics", "rank": "0|hzzzzz"},
    {"id": 3, "title": "Chemistry", "rank": "0|i00007"},
]


def _tree() -> list[dict[str, Any]]:
    return [
        {
            **SUBJECTS[0],
            "topics": [
                {"id": 10, "title": "Sets", "rank": "0|hzzzzz", "articles": [
                    {"id": 100, "title": "Unions", "rank": "0|hzzzzz"},
                    {"id": 101, "title": "Intersections", "rank": "0|i00007"},
                ]},
            ],
        },
        {**SUBJECTS[1], "topics": []},
        {**SUBJECTS[2], "topics": []},
    ]


def test_neighbours_for_first_and_last() -> None:
    assert _neighbour_ranks(SUBJECTS, 2, first=True) == (None, "0|hzzzzr")
    assert _neighbour_ranks(SUBJECTS, 2, last=True) == ("0|i00007", None)
    assert _neighbour_ranks(SUBJECTS, 3, last=True) == ("0|hzzzzz", None)


def test_neighbours_after_and_before_skip_the_moved_item() -> None:
    assert _neighbour_ranks(SUBJECTS, 3, after_id=1) == ("0|hzzzzr", "0|hzzzzz")
    assert _neighbour_ranks(SUBJECTS, 1, after_id=2) == ("0|hzzzzz", "0|i00007")
    assert _neighbour_ranks(SUBJECTS, 1, before_id=3) == ("0|hzzzzz", "0|i00007")
    assert _neighbour_ranks(SUBJECTS, 3, before_id=1) == (None, "0|hzzzzr")


def test_neighbours_in_single_item_list() -> None:
    assert _neighbour_ranks(SUBJECTS[:1], 1, first=True) == (None, None)


@pytest.mark.parametrize(
    "options",
    [{}, {"first": True, "last": True}, {"after_id": 1, "before_id": 3}],
)
def test_neighbours_need_exactly_one_target(options: dict) -> None:
    with pytest.raises(ValueError):
        _neighbour_ranks(SUBJECTS, 2, **options)


def test_neighbours_reject_unknown_or_self_anchor() -> None:
    with pytest.raises(ValueError):
        _neighbour_ranks(SUBJECTS, 2, after_id=99)
    with pytest.raises(ValueError):
        _neighbour_ranks(SUBJECTS, 2, after_id=2)


def test_find_siblings_per_kind() -> None:
    tree = _tree()
    subjects, subject_parent = _find_siblings(tree, Kind.subject, 2)
    topics, topic_parent = _find_siblings(tree, Kind.topic, 10)
    articles, article_parent = _find_siblings(tree, Kind.article, 101)

    assert [subject["id"] for subject in subjects] == [1, 2, 3]
    assert subject_parent is None
    assert [topic["id"] for topic in topics] == [10]
    assert topic_parent == 1
    assert [article["id"] for article in articles] == [100, 101]
    assert article_parent == 10
    with pytest.raises(ValueError):
        _find_siblings(tree, Kind.article, 10)


def test_rank_command_is_offline() -> None:
    result = runner.invoke(cli, ["rank", "--after", "0|hzzzzz", "--before", "0|i00001"])

    assert result.exit_code == 0
    assert result.output.strip() == "0|i"


def test_rank_command_reports_errors() -> None:
    result = runner.invoke(cli, ["rank", "--after", "0|b", "--before", "0|a"])

    assert result.exit_code == 1
    assert "must sort before" in result.output


def test_session_and_logout(tmp_path: Path) -> None:
    session_file = tmp_path / "session.json"
    admin_cli._save_session(session_file, "admin", {"access_token": "abc", "refresh_token": "def"})

    shown = runner.invoke(cli, ["--session-file", str(session_file), "session"])
    cleared = runner.invoke(cli, ["--session-file", str(session_file), "logout"])
    again = runner.invoke(cli, ["--session-file", str(session_file), "logout"])

    assert "Logged in as admin" in shown.output
    assert "Session cleared" in cleared.output
    assert "No session to clear" in again.output
    assert not session_file.exists()


def test_move_posts_resolved_neighbours(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    session_file = tmp_path / "session.json"
    admin_cli._save_session(session_file, "admin", {"access_token": "abc"})
    calls: list[tuple] = []

    async def fake_fetch_tree(ctx) -> list[dict[str, Any]]:
        return _tree()

    async def fake_request(ctx, method, path, payload=None, access_token=None) -> dict[str, Any]:
        calls.append((method, path, payload, access_token))
        return {"message": "Article reordered", "newRank": "0|hzzzzr"}

    monkeypatch.setattr(admin_cli, "_fetch_tree", fake_fetch_tree)
    monkeypatch.setattr(admin_cli, "_perform_action_request", fake_request)

    result = runner.invoke(cli, ["--session-file", str(session_file), "move", "article", "101", "--first"])

    assert result.exit_code == 0, result.output
    assert calls == [
        ("POST", "/api/admin/articles/reorder", {"id": 101, "beforeRank": "0|hzzzzz"}, "abc"),
    ]
    assert "moved to 0|hzzzzr" in result.output


def test_move_without_session_fails(tmp_path: Path) -> None:
    result = runner.invoke(
        cli, ["--session-file", str(tmp_path / "none.json"), "move", "subject", "1", "--last"]
    )

    assert result.exit_code == 1
    assert "Log in" in result.output


def test_rebalance_topics_requires_parent(tmp_path: Path) -> None:
    result = runner.invoke(cli, ["--session-file", str(tmp_path / "s.json"), "rebalance", "topic"])

    assert result.exit_code == 1
    assert "parent" in result.output


def test_tree_prints_hierarchy(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_fetch_tree(ctx) -> list[dict[str, Any]]:
        return _tree()

    monkeypatch.setattr(admin_cli, "_fetch_tree", fake_fetch_tree)
    result = runner.invoke(cli, ["tree"])

    lines = result.output.splitlines()
    assert result.exit_code == 0
    assert lines[0].startswith("[1] Maths")
    assert lines[1].startswith("  [10] Sets")
    assert lines[2].startswith("    [100] Unions")
