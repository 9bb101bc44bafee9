from .generator import DeckGenerator, task_quest_index
from .member_deck import build_member_deck, generate_micro_steps

__all__ = ["DeckGenerator", "build_member_deck", "generate_micro_steps", "task_quest_index"]
