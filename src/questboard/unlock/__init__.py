from .evaluator import UnlockEvaluator, UnlockResult, condition_met, conditions_met

__all__ = ["UnlockEvaluator", "UnlockResult", "condition_met", "conditions_met"]
