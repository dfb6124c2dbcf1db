import asyncio
import random
import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI
from openai import APIConnectionError, OpenAI

from storyforge.model_props import PricingTable, is_openai_model, parse_model_name

T = TypeVar("T")


class MaxRetryErrorsException(Exception):
    pass


class FatalLlmError(Exception):
    """
    Raised for errors that retrying cannot fix (malformed request, auth, permanent rejection).
    """
    pass


# -----------------------
# Error classification
# -----------------------

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
FATAL_STATUS_CODES = frozenset({400, 401, 403, 404, 409, 413, 422})


def error_status_code(e: BaseException) -> int | None:
    for attr in ("status_code", "code", "http_status"):
        v = getattr(e, attr, None)
        if isinstance(v, int) and not isinstance(v, bool):
            return v
    resp = getattr(e, "response", None)
    v = getattr(resp, "status_code", None)
    if isinstance(v, int):
        return v
    return None


def is_timeout_error(e: BaseException) -> bool:
    if isinstance(e, (TimeoutError, asyncio.TimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def is_rate_limit_error(e: BaseException) -> bool:
    if error_status_code(e) == 429:
        return True
    msg = str(e)
    return (
        "429" in msg
        and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
        )
    )


def is_retryable_error(e: BaseException) -> bool:
    """
    Rate limiting, timeouts, 5xx and network failures are retryable.
    Explicit 4xx rejections and local programming errors are not.
    Anything else unclassified is retried (bounded by the policy).
    """
    if isinstance(e, FatalLlmError):
        return False
    code = error_status_code(e)
    if code in RETRYABLE_STATUS_CODES:
        return True
    if code in FATAL_STATUS_CODES:
        return False
    if is_rate_limit_error(e) or is_timeout_error(e):
        return True
    if isinstance(e, (ConnectionError, APIConnectionError)):
        return True
    if isinstance(e, (ValueError, TypeError, KeyError, AttributeError)):
        return False
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    The single retry policy shared by every external call.

    delay(attempt) = min(max_delay, base * 2^(attempt-1) + uniform(0, jitter * base * 2^(attempt-1)))
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.3
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable_error, compare=False)

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        rng = rng or random
        exp = self.base_delay * (2 ** max(0, attempt - 1))
        return min(self.max_delay, exp + rng.uniform(0, self.jitter * exp))


class BackoffGate:
    """
    Pause shared by every thread using the same client set: when one call is
    throttled (429 / timeout) the others wait out the same window instead of
    piling more requests onto the provider.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._clock = clock
        self._wait_until = 0.0

    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self._wait_until - self._clock())

    def block_for(self, seconds: float) -> None:
        with self._lock:
            self._wait_until = max(self._wait_until, self._clock() + seconds)

    def wait(self, sleep: Callable[[float], None] = time.sleep) -> None:
        wait = self.remaining()
        if wait > 0:
            sleep(wait)


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy | None = None,
    gate: BackoffGate | None = None,
    log: Callable[[str], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a sync LLM call under the retry policy.

    Non-retryable errors raise FatalLlmError immediately; exhausting attempts
    raises MaxRetryErrorsException chained to the last error.
    """
    policy = policy or RetryPolicy()
    last_exception: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if gate is not None:
            gate.wait(sleep)
        start_time = time.time()
        try:
            return fn()
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if not policy.is_retryable(e):
                if log:
                    log(f"Attempt {attempt} failed with a non-retryable error (elapsed={elapsed:.2f}s): {e}")
                raise FatalLlmError(str(e)) from e

            if attempt >= policy.max_attempts:
                if log:
                    log(f"Attempt {attempt} failed, no attempts left (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")
                break

            delay = policy.delay_for(attempt)
            if gate is not None and (is_rate_limit_error(e) or is_timeout_error(e)):
                gate.block_for(delay)
                msg = f"Attempt {attempt} got 429/timeout, backing off ~{delay:.1f}s."
            else:
                sleep(delay)
                msg = f"Attempt {attempt} failed, retried after ~{delay:.1f}s."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}")

    raise MaxRetryErrorsException(f"All {policy.max_attempts} retry attempts failed.") from last_exception


class BaseLlmClient:
    """
    Usage accounting shared by the chat client. Calls from several worker
    threads land on the same client, so every merge happens under a lock.
    """

    model_name: str
    pricing: PricingTable | None
    last_usage: Optional[Dict[str, float]]

    def _init_usage(self, pricing: PricingTable | None) -> None:
        self.pricing = pricing
        self.last_usage = None
        self._usage_lock = threading.Lock()

    def _accumulate(self, inc: Dict[str, float], service_tier: str | None = None) -> None:
        if self.pricing is not None:
            inc["accrued_cost"] = self.pricing.estimate_cost_usd(
                llm_model_name=self.model_name,
                prompt_tokens=int(inc["prompt_token_count"]),
                completion_tokens=int(inc["candidates_token_count"]),
                service_tier=service_tier,
            )
        with self._usage_lock:
            if self.last_usage is None:
                self.last_usage = dict(inc)
                return
            for k, v in inc.items():
                self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_usage(self, resp: Any, service_tier: str | None = None) -> None:
        if resp is None:
            return
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        details = getattr(usage, "input_tokens_details", None)
        inc = {
            "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
            "cached_content_token_count": (getattr(details, "cached_tokens", 0) or 0) if details else 0,
        }
        self._accumulate(inc, service_tier)

    def _merge_vertex_usage(self, usage_metadata: Any) -> None:
        if not usage_metadata:
            return

        def get(*keys: str) -> int:
            for k in keys:
                if isinstance(usage_metadata, dict):
                    v = usage_metadata.get(k)
                else:
                    v = getattr(usage_metadata, k, None)
                if v:
                    return int(v)
            return 0

        inc = {
            "prompt_token_count": get("prompt_token_count", "input_tokens"),
            "candidates_token_count": get("candidates_token_count", "output_tokens"),
            "total_token_count": get("total_token_count", "total_tokens"),
            "cached_content_token_count": get("cached_content_token_count"),
        }
        self._accumulate(inc)

    def get_accrued_cost(self) -> float:
        with self._usage_lock:
            if not self.last_usage:
                return 0.0
            return float(self.last_usage.get("accrued_cost", 0.0))

    def get_accrued_usage(self) -> Dict[str, float]:
        with self._usage_lock:
            return dict(self.last_usage or {})


class ChatLlmClient(BaseLlmClient):
    """
    Minimal wrapper for chat-style use:

        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), AIMessage(...), ...])

    HumanMessage content may be a list of blocks to carry images:
        [{"type": "text", "text": "..."},
         {"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}}]

    Under the hood:
    - Vertex: ChatVertexAI.invoke(messages)
    - OpenAI: Responses API with input=[{role, content}, ...]
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        backoff_gate: BackoffGate | None = None,
        pricing: PricingTable | None = None,
        log: Callable[[str], None] | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.backoff_gate = backoff_gate
        self._log = log
        self._openai_params: Dict[str, Any] = {}
        self._init_usage(pricing)

        if self.provider == "vertex":
            self._vertex = ChatVertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
                max_retries=0,
            )
            self._client = None
        elif self.provider == "openai":
            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider}")

    def _to_openai_content(self, content: Any) -> Any:
        if isinstance(content, str):
            return content
        blocks = []
        for block in content or []:
            if isinstance(block, str):
                blocks.append({"type": "input_text", "text": block})
            elif block.get("type") == "text":
                blocks.append({"type": "input_text", "text": block.get("text", "")})
            elif block.get("type") == "image_url":
                url = block.get("image_url")
                url = url.get("url") if isinstance(url, dict) else url
                blocks.append({"type": "input_image", "image_url": url})
        return blocks

    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "developer"
            elif isinstance(m, HumanMessage):
                role = "user"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": self._to_openai_content(m.content)})
        return out

    def _invoke_once(self, messages: List[BaseMessage]) -> str:
        """
        Single HTTP call without retries/backoff.
        """
        if self.provider == "vertex":
            resp = self._vertex.invoke(messages)

            usage_md = getattr(resp, "usage_metadata", None)
            if usage_md is None:
                rm = getattr(resp, "response_metadata", None)
                if isinstance(rm, dict):
                    usage_md = rm.get("usage_metadata")
                elif rm is not None:
                    usage_md = getattr(rm, "usage_metadata", None)
            self._merge_vertex_usage(usage_md)

            if isinstance(resp, str):
                return resp
            content = getattr(resp, "content", str(resp))
            if isinstance(content, list):
                content = "".join(
                    b if isinstance(b, str) else str(b.get("text", "")) for b in content
                )
            return content

        resp = self._client.responses.create(
            model=self.model_name,
            input=self._to_openai_messages(messages),
            **self._openai_params,
        )
        self._merge_usage(resp, self._openai_params.get("service_tier"))

        text = getattr(resp, "output_text", "") or ""
        return text.strip()

    def invoke(self, messages: List[BaseMessage]) -> str:
        """
        Synchronous chat call under the shared retry policy and backoff gate.
        """
        return call_with_retries_sync(
            lambda: self._invoke_once(messages),
            policy=self.retry_policy,
            gate=self.backoff_gate,
            log=self._log or (lambda msg: print(f"[CHAT-LLM-RETRY] {msg}")),
        )
