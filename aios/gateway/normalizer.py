"""Response Normalizer: post-processes adapter output.

Applies final normalization steps before a Response leaves an adapter:
  - Strips Markdown code fences from structured-output text
  - Fills total_tokens from input/output counts
  - Prices the call from the model's cost metadata
"""

from __future__ import annotations

import re

from aios.gateway.types import ModelInfo, Response, TaskType

# Opening (with optional language tag) and closing fence markers
_FENCE = re.compile(r"```[A-Za-z0-9_+-]*")


def strip_code_fences(text: str) -> str:
    """Remove Markdown code-fence markers, keeping the fenced content."""
    if not text:
        return text
    return _FENCE.sub("", text).strip()


def calc_cost(model: ModelInfo | None, total_tokens: int | None) -> float | None:
    if model is None or model.cost_per_1k_tokens is None or not total_tokens:
        return None
    return round(total_tokens / 1000 * model.cost_per_1k_tokens, 6)


def normalize_response(response: Response, task_type: TaskType, model: ModelInfo | None = None) -> Response:
    """Apply normalization to an adapter response.

    Idempotent.
    """
    if task_type == TaskType.JSON:
        response.text = strip_code_fences(response.text)

    if response.total_tokens is None and (response.input_tokens or response.output_tokens):
        response.total_tokens = (response.input_tokens or 0) + (response.output_tokens or 0)

    if response.cost is None:
        response.cost = calc_cost(model, response.total_tokens)

    return response
