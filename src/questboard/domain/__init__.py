from .models import (
    AffinityTag,
    DailyDeck,
    DeckItem,
    Goal,
    Member,
    MemberCapacity,
    MemberDeckEntry,
    MemberProfile,
    MemberQuestDeck,
    MicroStep,
    Quest,
    Questline,
    Task,
    UnlockCondition,
    quest_state_rank,
)

__all__ = [
    "AffinityTag",
    "DailyDeck",
    "DeckItem",
    "Goal",
    "Member",
    "MemberCapacity",
    "MemberDeckEntry",
    "MemberProfile",
    "MemberQuestDeck",
    "MicroStep",
    "Quest",
    "Questline",
    "Task",
    "UnlockCondition",
    "quest_state_rank",
]
