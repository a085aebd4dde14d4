"""Chat prompt construction.

Messages are rendered with per-format Jinja2 templates.  The result contains
special-token text (``<|im_start|>`` and friends) and is meant to be fed to
``prepare``, which tokenizes with special-token parsing enabled.

:func:`build_budgeted_prompt` fits a conversation into the context window:
the system prompt always goes in, then as many of the newest messages as the
token budget allows.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

import jinja2

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Formats
#
# Rendered with trim_blocks/lstrip_blocks: a line holding only a block tag
# produces no output, so every newline below is part of the prompt.
# ---------------------------------------------------------------------------

_CHATML = """\
{% for message in messages %}
<|im_start|>{{ message.role }}
{{ message.content }}
<|im_end|>
{% endfor %}
{% if add_generation_prompt %}
<|im_start|>assistant
{% endif %}"""

_LLAMA3 = """\
<|begin_of_text|>{% for message in messages %}
<|start_header_id|>{{ message.role }}<|end_header_id|>

{{ message.content }}<|eot_id|>{% endfor %}
{% if add_generation_prompt %}
<|start_header_id|>assistant<|end_header_id|>

{% endif %}"""

# Gemma has no system role; its text opens the first user turn.
_GEMMA3 = """\
{% if messages and messages[0].role == 'system' %}
{% set preamble = messages[0].content + '\\n\\n' %}
{% set turns = messages[1:] %}
{% else %}
{% set preamble = '' %}
{% set turns = messages %}
{% endif %}
<bos>{% for message in turns %}
{% if message.role == 'assistant' %}
<start_of_turn>model
{{ message.content }}<end_of_turn>
{% else %}
<start_of_turn>{{ message.role }}
{{ preamble if loop.first else '' }}{{ message.content }}<end_of_turn>
{% endif %}
{% endfor %}
{% if add_generation_prompt %}
<start_of_turn>model
{% endif %}"""

_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)

_FORMATS: dict[str, jinja2.Template] = {
    name: _ENV.from_string(source)
    for name, source in (("chatml", _CHATML), ("llama", _LLAMA3), ("gemma", _GEMMA3))
}

_ROLES = frozenset({"system", "user", "assistant"})


def render_chat_template(
    messages: Sequence[dict[str, str]],
    model_type: str = "chatml",
    *,
    add_generation_prompt: bool = True,
) -> str:
    """Render ``messages`` (dicts with ``role`` and ``content``) in ``model_type`` format.

    Raises:
        ValueError: For an unknown format or role.
    """
    template = _FORMATS.get(model_type)
    if template is None:
        raise ValueError(f"unsupported chat format {model_type!r}; choose from {sorted(_FORMATS)}")
    for message in messages:
        if message.get("role") not in _ROLES:
            raise ValueError(f"unknown role {message.get('role')!r}; expected one of {sorted(_ROLES)}")
    return template.render(messages=list(messages), add_generation_prompt=add_generation_prompt)


def build_budgeted_prompt(
    messages: Sequence[dict[str, str]],
    count_tokens: Callable[[str], int],
    *,
    system_prompt: str | None = None,
    context_size: int = 1024,
    reserve: int = 200,
    model_type: str = "chatml",
) -> str:
    """Fit a conversation into ``context_size - reserve`` tokens.

    The system prompt is always included, even when it alone exceeds the
    budget.  Messages are then taken newest-first until the next one no
    longer fits, restored to chronological order, and rendered with the
    assistant generation header.

    Args:
        messages: Conversation, oldest first.  System messages here are
            ignored in favour of ``system_prompt``.
        count_tokens: Token counter for a rendered chunk.  A negative count
            (tokenization failure) makes the message not fit.
        system_prompt: Optional system instruction.
        context_size: Context window of the target engine.
        reserve: Tokens kept free for the reply.
        model_type: Template to render with.

    Returns:
        The prompt, or ``""`` when ``messages`` is empty.
    """
    if not messages:
        return ""

    budget = context_size - reserve
    used = 0
    system: list[dict[str, str]] = []
    if system_prompt:
        system = [{"role": "system", "content": system_prompt}]
        used = count_tokens(render_chat_template(system, model_type, add_generation_prompt=False))

    picked: list[dict[str, str]] = []
    for message in reversed(messages):
        if message.get("role") == "system":
            continue
        chunk = render_chat_template([message], model_type, add_generation_prompt=False)
        cost = count_tokens(chunk)
        if cost < 0 or used + cost > budget:
            break
        picked.append(message)
        used += cost

    picked.reverse()
    dropped = sum(1 for m in messages if m.get("role") != "system") - len(picked)
    if dropped:
        logger.info("prompt budget %d: dropped %d oldest message(s)", budget, dropped)
    return render_chat_template(system + picked, model_type, add_generation_prompt=True)
