from __future__ import annotations

from questboard.domain.models import (
    AffinityTag,
    DailyDeck,
    DeckItem,
    Member,
    MemberProfile,
    Quest,
    Task,
    UnlockCondition,
    quest_state_rank,
)


class TestQuest:
    def test_quest_without_conditions_starts_unlocked(self) -> None:
        quest = Quest.create(org_id="org-1", title="Kickoff")
        assert quest.state == "unlocked"
        assert quest.unlocked_at is not None

    def test_quest_with_conditions_starts_locked(self) -> None:
        quest = Quest.create(
            org_id="org-1",
            title="Second",
            unlock_conditions=[UnlockCondition.quest_completed("q-1")],
        )
        assert quest.state == "locked"
        assert quest.unlocked_at is None

    def test_round_trip_keeps_conditions(self) -> None:
        quest = Quest.create(
            org_id="org-1",
            title="Gate",
            unlock_conditions=[
                UnlockCondition.task_completed("t-1"),
                UnlockCondition.all_tasks_completed(["t-2", "t-3"]),
            ],
            task_ids=["t-9"],
            quest_id="q-gate",
        )
        restored = Quest.from_dict(quest.to_dict())
        assert restored.id == "q-gate"
        assert [c.type for c in restored.unlock_conditions] == ["taskCompleted", "allTasksCompleted"]
        assert restored.unlock_conditions[1].task_ids == ["t-2", "t-3"]
        assert restored.task_ids == ["t-9"]

    def test_unknown_condition_type_is_kept(self) -> None:
        quest = Quest.from_dict({"id": "q", "unlock_conditions": [{"type": "moonPhase"}]})
        assert quest.unlock_conditions[0].type == "moonPhase"

    def test_invalid_state_falls_back_to_locked(self) -> None:
        assert Quest.from_dict({"id": "q", "state": "exploded"}).state == "locked"

    def test_state_rank_is_monotonic(self) -> None:
        ranks = [quest_state_rank(s) for s in ("locked", "unlocked", "in-progress", "completed")]
        assert ranks == sorted(ranks)
        assert quest_state_rank("bogus") == -1


class TestTask:
    def test_done_task_is_truly_complete(self) -> None:
        assert Task(title="x", status="done").is_truly_complete

    def test_approval_required_blocks_true_completion(self) -> None:
        task = Task(title="x", status="done", requires_approval=True)
        assert not task.is_truly_complete
        task.approved_at = "2026-03-10T00:00:00+00:00"
        assert not task.is_truly_complete
        task.approved_by = "lead"
        assert task.is_truly_complete

    def test_minutes_default(self) -> None:
        assert Task(title="x").minutes == 60
        assert Task(title="x", estimated_minutes=0).minutes == 60
        assert Task(title="x", estimated_minutes=25).minutes == 25

    def test_from_dict_is_tolerant(self) -> None:
        task = Task.from_dict(
            {
                "id": "t-1",
                "status": "weird",
                "priority": "critical",
                "estimated_minutes": "45",
                "blockers": ["", "  ", "vendor"],
                "version": "3",
            }
        )
        assert task.status == "todo"
        assert task.priority == "medium"
        assert task.estimated_minutes == 45
        assert task.blockers == ["vendor"]
        assert task.version == 3


class TestAffinityTag:
    def test_parse_accepts_names_and_codes(self) -> None:
        assert AffinityTag.parse("Wonder") is AffinityTag.WONDER
        assert AffinityTag.parse("tenacity") is AffinityTag.TENACITY
        assert AffinityTag.parse("G") is AffinityTag.GALVANIZING
        assert AffinityTag.parse(AffinityTag.INVENTION) is AffinityTag.INVENTION

    def test_parse_rejects_unknown(self) -> None:
        assert AffinityTag.parse("X") is None
        assert AffinityTag.parse("") is None
        assert AffinityTag.parse(None) is None

    def test_codes(self) -> None:
        assert [t.code for t in AffinityTag] == ["W", "I", "D", "G", "E", "T"]


class TestMember:
    def test_profile_usable_requires_tags_and_capacity(self) -> None:
        assert not MemberProfile(top2=[AffinityTag.WONDER]).usable
        assert not MemberProfile(daily_capacity_minutes=480).usable
        assert MemberProfile(top2=[AffinityTag.WONDER], daily_capacity_minutes=480).usable

    def test_profile_round_trip_drops_unknown_tags(self) -> None:
        member = Member.from_dict(
            {
                "id": "m-1",
                "email": "a@example.com",
                "profile": {"top2": ["Z", "Invention"], "daily_capacity_minutes": 300},
            }
        )
        assert member.profile is not None
        assert member.profile.top2 == [AffinityTag.INVENTION]
        assert member.to_dict()["profile"]["top2"] == ["Invention"]

    def test_label_prefers_email(self) -> None:
        assert Member(id="m-1", email="a@example.com", name="A").label == "a@example.com"
        assert Member(id="m-1", name="A").label == "A"
        assert Member(id="m-1").label == "m-1"


def test_daily_deck_key_and_round_trip() -> None:
    deck = DailyDeck(
        id=DailyDeck.key("org-1", "2026-03-10"),
        org_id="org-1",
        date="2026-03-10",
        items=[DeckItem(task_id="t-1", score=1010, reason="Urgent priority")],
        warnings=["Only 1 task(s) in deck"],
    )
    assert deck.id == "daily-deck-org-1-2026-03-10"
    restored = DailyDeck.from_dict(deck.to_dict())
    assert restored.task_ids == ["t-1"]
    assert restored.items[0].reason == "Urgent priority"
    assert restored.warnings == ["Only 1 task(s) in deck"]
