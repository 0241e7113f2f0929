"""
Prompt construction.

Provides:
- Turn: One conversation turn
- ChatMLTemplate: Role-delimited turn template
- PromptBudgetBuilder: History trimming to fit the context window
- BudgetPlan: Which turns were kept and what they cost
"""

from tokenstream_lite.prompt.budget_builder import BudgetPlan, ChatMLTemplate, PromptBudgetBuilder, Turn

__all__ = ["BudgetPlan", "ChatMLTemplate", "PromptBudgetBuilder", "Turn"]
