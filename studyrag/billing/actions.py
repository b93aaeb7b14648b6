"""Billable actions, their default credit costs, and the model -> action mapping."""
from __future__ import annotations

from enum import Enum

from studyrag.schemas import Provider


class CreditAction(str, Enum):
    ASK_GPT35 = "ask_gpt35"
    ASK_GPT4 = "ask_gpt4"
    ASK_GPT4O = "ask_gpt4o"
    ASK_CLAUDE = "ask_claude"
    UPLOAD_DOCUMENT_PAGE = "upload_document_page"


DEFAULT_CREDIT_COSTS: dict[CreditAction, int] = {
    CreditAction.ASK_GPT35: 1,
    CreditAction.ASK_GPT4: 10,
    CreditAction.ASK_GPT4O: 5,
    CreditAction.ASK_CLAUDE: 5,
    CreditAction.UPLOAD_DOCUMENT_PAGE: 1,
}


def credit_action_for(provider: Provider, model: str) -> CreditAction:
    """
    Map a (provider, model) pair to the action it is billed as.

    Any Anthropic model bills as ask_claude.  For OpenAI, "gpt-4o" models
    (including gpt-4o-mini) bill as ask_gpt4o, other "gpt-4" models as
    ask_gpt4, everything else as ask_gpt35.
    """
    if provider == Provider.ANTHROPIC:
        return CreditAction.ASK_CLAUDE
    name = model.lower()
    if "gpt-4o" in name:
        return CreditAction.ASK_GPT4O
    if "gpt-4" in name:
        return CreditAction.ASK_GPT4
    return CreditAction.ASK_GPT35
