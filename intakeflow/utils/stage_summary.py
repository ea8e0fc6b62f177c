"""
Stage summary text for completion checkpoints.

When a conversation leaves a stage whose completion_checkpoint asks for
it, the user gets a short recap of what they answered there.
"""

import re
from typing import Optional

from intakeflow.contracts import Question
from intakeflow.core.catalog import Catalog
from intakeflow.core.json_path import get_by_path
from intakeflow.utils.helpers import format_value, is_answered
from intakeflow.utils.messages import MessageID, render_message, render_template


def short_label(question: Question) -> str:
    raw = (question.label or question.prompt or question.field_key).strip()
    raw = re.sub(r"\s+", " ", raw)
    raw = re.sub(r"[?？]\s*$", "", raw)
    return raw[:80]


def build_stage_summary(catalog: Catalog, state, stage_key: str, max_items: int = 4) -> str:
    """
    Summarize answered customer questions of a stage.

    Args:
        catalog: Catalog
        state: QuestionnaireState (values are read from its form document)
        stage_key: Stage to summarize
        max_items: Maximum "label: value" pairs before the "and N more" suffix

    Returns:
        str: Summary, or '' when the stage has nothing answered
    """
    stage = catalog.stage(stage_key)
    if stage is None:
        return ""

    pairs = []
    answered = 0
    for question in catalog.iter_stage_questions(stage):
        if question.audience != "customer" or question.input_kind == "file":
            continue
        value = get_by_path(state.form_document, question.json_path)
        if not is_answered(value):
            continue
        answered += 1
        if len(pairs) < max_items:
            pairs.append(f"{short_label(question)}: {format_value(value)}")

    if not pairs:
        return ""
    more = answered - len(pairs)
    if more > 0:
        suffix = render_message(MessageID.SUMMARY_MORE, catalog.messages, count=more)
        return "; ".join(pairs) + "; " + suffix
    return "; ".join(pairs)


def render_checkpoint(catalog: Catalog, state, stage_key: str) -> Optional[str]:
    """
    Checkpoint text for leaving a stage, or None if the stage has no checkpoint.
    """
    stage = catalog.stage(stage_key)
    if stage is None or not stage.completion_checkpoint.send_summary:
        return None

    summary = build_stage_summary(catalog, state, stage_key)
    template = stage.completion_checkpoint.summary_template.strip()
    if template:
        return render_template(template, stage_summary=summary)
    if not summary:
        return None
    return render_message(MessageID.STAGE_SUMMARY, catalog.messages, stage_summary=summary)
