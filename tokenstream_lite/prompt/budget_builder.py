"""Token-budgeted prompt construction from conversation history."""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from tokenstream_lite.config import DEFAULT_CONTEXT_SIZE


@dataclass(frozen=True)
class Turn:
    """One conversation turn. Any role other than ``user`` renders as ``assistant``."""
    role: str
    text: str

    @property
    def chat_role(self) -> str:
        return "user" if self.role == "user" else "assistant"


class ChatMLTemplate:
    """Role-delimited turn template (``<|im_start|>role ... <|im_end|>``)."""

    turn_start = "<|im_start|>"
    turn_end = "<|im_end|>"

    def render_turn(self, turn: Turn) -> str:
        return f"{self.turn_start}{turn.chat_role}\n{turn.text}\n{self.turn_end}\n"

    @property
    def assistant_prefix(self) -> str:
        """Open assistant turn that primes generation."""
        return f"{self.turn_start}assistant\n"


@dataclass
class BudgetPlan:
    """Result of history selection.

    Attributes:
        budget: Token budget for system preamble plus turns
        system_cost: Token cost of the system preamble
        selected: Chosen turns, oldest first (a suffix of the input)
        costs: Token cost of each chosen turn, aligned with ``selected``
        dropped: Number of oldest turns left out
    """
    budget: int
    system_cost: int
    selected: List[Turn] = field(default_factory=list)
    costs: List[int] = field(default_factory=list)
    dropped: int = 0

    @property
    def total(self) -> int:
        return self.system_cost + sum(self.costs)


class PromptBudgetBuilder:
    """Builds a prompt that fits ``context_size - reserved_for_generation`` tokens.

    The system preamble is always included. Turns are taken from newest to
    oldest while the running total stays within budget; the first turn that
    would exceed it ends the selection, so only the oldest turns are ever
    dropped.

    Args:
        count_tokens: Returns the token cost of a piece of text
        context_size: Context window in tokens
        reserved_for_generation: Tokens left free for the reply
        template: Turn template
    """

    def __init__(
        self,
        count_tokens: Callable[[str], int],
        context_size: int = DEFAULT_CONTEXT_SIZE,
        reserved_for_generation: int = 200,
        template: Optional[ChatMLTemplate] = None,
    ):
        if reserved_for_generation >= context_size:
            raise ValueError(
                f"reserved_for_generation ({reserved_for_generation}) must be smaller "
                f"than context_size ({context_size})"
            )
        self.count_tokens = count_tokens
        self.context_size = context_size
        self.reserved_for_generation = reserved_for_generation
        self.template = template or ChatMLTemplate()

    @property
    def budget(self) -> int:
        return self.context_size - self.reserved_for_generation

    def select(self, turns: Sequence[Turn], system_prompt: Optional[str] = None) -> BudgetPlan:
        """Choose the most recent turns that fit the budget."""
        plan = BudgetPlan(
            budget=self.budget,
            system_cost=self.count_tokens(system_prompt) if system_prompt else 0,
        )

        used = plan.system_cost
        chosen: List[Turn] = []
        costs: List[int] = []
        for turn in reversed(turns):
            cost = self.count_tokens(self.template.render_turn(turn))
            if used + cost > plan.budget:
                break
            chosen.append(turn)
            costs.append(cost)
            used += cost

        plan.selected = chosen[::-1]
        plan.costs = costs[::-1]
        plan.dropped = len(turns) - len(chosen)
        return plan

    def render(self, plan: BudgetPlan, system_prompt: Optional[str] = None) -> str:
        parts = [system_prompt or ""]
        parts.extend(self.template.render_turn(turn) for turn in plan.selected)
        parts.append(self.template.assistant_prefix)
        return "".join(parts)

    def build(self, turns: Sequence[Turn], system_prompt: Optional[str] = None) -> str:
        """Return the final prompt text; ``""`` when there are no turns."""
        if not turns:
            return ""
        return self.render(self.select(turns, system_prompt), system_prompt)
