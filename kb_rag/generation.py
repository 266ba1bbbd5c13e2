"""Grounded prompt assembly for the answer service.

Provides:
- AnswerMode: fidelity levels (normal, strict, super_strict)
- resolve_mode: request override or the configured strict toggles
- build_context: retrieved chunk texts joined into one context block
- build_prompt: preamble for the mode + context + question
- build_fallback_prompt: permissive prompt used when no evidence survived filtering

The modes differ only in preamble wording; retrieval and filtering are identical.
Preamble texts come from RagOptions and may use a {no_data} placeholder.
"""
import enum
from typing import Iterable, Optional

from kb_rag.options import RagOptions

CONTEXT_SEPARATOR = "\n\n---\n\n"


class AnswerMode(str, enum.Enum):
    NORMAL = "normal"
    STRICT = "strict"
    SUPER_STRICT = "super_strict"


def resolve_mode(options: RagOptions, override: Optional[str] = None) -> AnswerMode:
    """Pick the fidelity mode for one request.

    Args:
        options: Options snapshot carrying the strict / super-strict toggles.
        override: Mode requested by the caller, if any.

    Returns:
        AnswerMode: The override when given; else super_strict when its toggle is on,
            strict when the strict toggle is on, otherwise normal.
    """
    if override:
        return AnswerMode(override)
    if options.super_strict_mode:
        return AnswerMode.SUPER_STRICT
    if options.strict_mode:
        return AnswerMode.STRICT
    return AnswerMode.NORMAL


def is_restrictive(mode: AnswerMode, options: RagOptions) -> bool:
    """Whether an empty evidence set must be answered with the no-data message."""
    return mode != AnswerMode.NORMAL or options.refuse_without_context


def _preamble(mode: AnswerMode, options: RagOptions) -> str:
    text = {
        AnswerMode.NORMAL: options.normal_preamble,
        AnswerMode.STRICT: options.strict_preamble,
        AnswerMode.SUPER_STRICT: options.super_strict_preamble,
    }[mode]
    # str.replace, not format(): admin-edited text may contain other braces
    return text.replace("{no_data}", options.no_data_message)


def build_context(passages: Iterable[str]) -> str:
    """Join chunk texts into the context block given to the chat model."""
    return CONTEXT_SEPARATOR.join(p.strip() for p in passages if p and p.strip())


def build_prompt(question: str, context: str, mode: AnswerMode, options: RagOptions) -> str:
    """Assemble the grounding prompt.

    Args:
        question: User question.
        context: Output of build_context.
        mode: Fidelity mode.
        options: Options snapshot with the preamble texts and no-data message.

    Returns:
        str: Prompt sent to the chat provider.
    """
    return (
        f"{_preamble(mode, options)}\n\n"
        "--- CONTEXT START ---\n"
        f"{context}\n"
        "--- CONTEXT END ---\n\n"
        f'User question: "{question.strip()}"\n\n'
        "Answer:"
    )


def build_fallback_prompt(question: str, options: RagOptions) -> str:
    """Prompt used in permissive configurations when no evidence is available."""
    return (
        f"{_preamble(AnswerMode.NORMAL, options)}\n\n"
        "No knowledge-base context matched this question; answer from general knowledge "
        "and say so if you are unsure.\n\n"
        f'User question: "{question.strip()}"\n\n'
        "Answer:"
    )
