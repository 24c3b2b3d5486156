from __future__ import annotations

import time
from typing import Any, Optional, Tuple

from openai import OpenAI as _OpenAI

from modules.common.utils import log_llm_usage


def _extract_usage(response: Any) -> Tuple[int, int]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return 0, 0
    if isinstance(usage, dict):
        prompt = usage.get("prompt_tokens") or usage.get("input_tokens") or 0
        completion = usage.get("completion_tokens") or usage.get("output_tokens") or 0
        return int(prompt), int(completion)
    prompt = getattr(usage, "prompt_tokens", None)
    completion = getattr(usage, "completion_tokens", None)
    if prompt is None:
        prompt = getattr(usage, "input_tokens", 0)
    if completion is None:
        completion = getattr(usage, "output_tokens", 0)
    return int(prompt or 0), int(completion or 0)


class _ChatCompletionsProxy:
    def __init__(self, client: Any, logger):
        self._client = client
        self._logger = logger

    def create(self, **kwargs):
        started = time.perf_counter()
        response = self._client.chat.completions.create(**kwargs)
        self._logger(response, kwargs.get("model"), (time.perf_counter() - started) * 1000)
        return response


class _ChatProxy:
    def __init__(self, client: Any, logger):
        self.completions = _ChatCompletionsProxy(client, logger)


class OpenAI:
    """
    Wrapper for the OpenAI client that records token usage for every stage call.
    Mimics the public surface the executors use: client.chat.completions.create.
    """

    def __init__(self, *args, stage_id: Optional[str] = None, run_id: Optional[str] = None, **kwargs):
        self._client = _OpenAI(*args, **kwargs)
        self.stage_id = stage_id
        self.run_id = run_id
        self.chat = _ChatProxy(self._client, self._log_usage)

    def _log_usage(self, response: Any, model: Optional[str], request_ms: float):
        prompt_tokens, completion_tokens = _extract_usage(response)
        if model is None:
            model = getattr(response, "model", None)
        log_llm_usage(
            model=model or "unknown",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            provider="openai",
            request_ms=round(request_ms, 3),
            request_id=getattr(response, "id", None),
            stage_id=self.stage_id,
            run_id=self.run_id,
        )
