"""Project-wide constants shared by the graph store and the memory pipeline."""

from __future__ import annotations

NODE_TYPES: tuple[str, ...] = ("entity", "fact", "event", "instruction", "opinion", "plan")

# Subtypes the model may send as a type; mapped onto the real node type.
TYPE_ALIASES: dict[str, str] = {
    "rule": "instruction",
    "tool_usage": "instruction",
    "process": "instruction",
    "preference": "opinion",
}

DEFAULT_SUBTYPE: dict[str, str] = {
    "fact": "definitional",
    "event": "action",
    "opinion": "user_opinion",
    "instruction": "rule",
    "plan": "scheduled",
}

DEFAULT_SALIENCE: dict[str, float] = {
    "fact": 1.0,
    "event": 0.8,
    "opinion": 0.6,
    "instruction": 1.0,
    "plan": 1.0,
}

DEFAULT_INSTRUCTION_SCOPE = 0.5
DEFAULT_PLAN_SCOPE = 0.3

EDGE_ABOUT = "about"
EDGE_SEE_ALSO = "see_also"

SECTION_ENTITIES = "People & things"
SECTION_INSTRUCTIONS = "Instructions"
SECTION_FACTS = "Facts"
SECTION_EVENTS = "Events"
SECTION_PLANS = "Upcoming plans"

SECTION_ORDER: tuple[str, ...] = (
    SECTION_ENTITIES,
    SECTION_INSTRUCTIONS,
    SECTION_FACTS,
    SECTION_EVENTS,
    SECTION_PLANS,
)

MEMORY_OPEN_TAG = "<memory>"
MEMORY_CLOSE_TAG = "</memory>"
ACTION_OPEN_TAG = "<memory-action-needed>"
ACTION_CLOSE_TAG = "</memory-action-needed>"

NO_RELEVANT_RECORDS = "NO_RELEVANT_RECORDS"
