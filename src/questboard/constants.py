"""Shared constants for the questboard orchestration core."""

STATE_DIR_NAME = ".questboard"
CONFIG_FILE = "config.yaml"
EVENTS_FILE = "events.jsonl"

# Record kinds
GOAL_KIND = "goals"
QUESTLINE_KIND = "questlines"
QUEST_KIND = "quests"
TASK_KIND = "tasks"
MEMBER_KIND = "members"
DAILY_DECK_KIND = "daily_decks"
MEMBER_DECK_KIND = "member_quest_decks"
SPRINT_PLAN_KIND = "sprint_plans"

RECORD_KINDS = (
    GOAL_KIND,
    QUESTLINE_KIND,
    QUEST_KIND,
    TASK_KIND,
    MEMBER_KIND,
    DAILY_DECK_KIND,
    MEMBER_DECK_KIND,
    SPRINT_PLAN_KIND,
)

WINDOWS_LOCK_BYTES = 1024

DEFAULT_CAPACITY_MINUTES = 480
DEFAULT_TASK_MINUTES = 60
SPRINT_WORKDAYS = 5
