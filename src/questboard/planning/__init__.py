from .sprint import SprintPlanDiff, build_sprint_plan, compare_sprint_plans, week_bounds

__all__ = ["SprintPlanDiff", "build_sprint_plan", "compare_sprint_plans", "week_bounds"]
