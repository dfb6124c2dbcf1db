# storyforge/base_utils.py

import base64
import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

import commentjson
import yaml
from json_repair import repair_json
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError

from forge_prompts.pipeline_prompts import PARSE_REPAIR_PROMPT
from storyforge.entities import SharedContext, is_unknown

logger = logging.getLogger("storyforge")

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


@dataclass
class ParseResult(Generic[T]):
    """
    Tagged outcome of parsing a model response: either ok with a value, or
    not ok with the raw text and the reason. Callers branch on `ok` only.
    """
    ok: bool
    value: T | None = None
    raw: str = ""
    error: str = ""

    @classmethod
    def success(cls, value: T, raw: str = "") -> "ParseResult[T]":
        return cls(ok=True, value=value, raw=raw)

    @classmethod
    def failure(cls, raw: str, error: str) -> "ParseResult[T]":
        return cls(ok=False, value=None, raw=raw, error=error)


_IMAGE_SIGNATURES = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
]


def guess_image_mime(data: bytes) -> str:
    for sig, mime in _IMAGE_SIGNATURES:
        if data.startswith(sig):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None, end_value=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value, indent=2)
        except TypeError:
            return str(value).strip()

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Replaces {key} placeholders for the keys passed in kwargs only.

        Unlike str.format, any other brace (JSON examples in prompts) is left
        alone, and placeholders without a matching kwarg stay as they are.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            missing_keys.append(key)
            return match.group(0)

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"\033[93m\033[3mMissing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}\033[0m")
        return result

    # -----------------------
    # Fault tolerant JSON
    # -----------------------

    def load_fault_tolerant_json(self, json_str, ensure_ordered=False):
        """
        Loads a JSON-like model response: commentjson first, then yaml on a
        sanitized copy, then the outermost {...} block, then json_repair.
        Raises ValueError when nothing yields an object or list.
        """
        def sanitize_json_string(input_str):
            def process_string_segment(match):
                content = match.group(1)
                content = re.sub(r'(?<!\\)\\(?![bfnrtu"\\/])', r'\\\\', content)
                content = re.sub(r'(?<!\\)\n', r'\\n', content)
                content = re.sub(r'(?<!\\)"', r'\"', content)
                return f'"{content}"'

            input_str = self.clean_triple_backticks(input_str)
            # comments outside of strings (// and /* */)
            input_str = re.sub(r'^\s*//.*?$|/\*.*?\*/', '', input_str, flags=re.MULTILINE | re.DOTALL)
            return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', process_string_segment, input_str, flags=re.DOTALL)

        def load_json(candidate):
            err = ""
            try:
                if ensure_ordered:
                    data = commentjson.loads(self.clean_triple_backticks(candidate), object_pairs_hook=OrderedDict)
                else:
                    data = commentjson.loads(self.clean_triple_backticks(candidate))
                if isinstance(data, (dict, list)):
                    return data, ""
                err = f"expected an object, got {type(data).__name__}"
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(sanitize_json_string(candidate))
                if isinstance(data, (dict, list)):
                    return data, ""
                err += "\n--\nYAML parsing did not yield an object."
            except Exception as e:
                err += "\n--\n" + str(e)
            return None, err

        text = json_str if isinstance(json_str, str) else str(json_str or "")
        data, err = load_json(text)
        if data is not None:
            return data

        block = re.search(r"\{[\s\S]*\}", self.clean_triple_backticks(text))
        if block:
            data, _ = load_json(block.group(0))
            if data is not None:
                return data

        repaired = repair_json(text)
        r_data, r_err = load_json(repaired) if repaired else (None, "json_repair returned nothing")
        if r_data:
            return r_data
        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {err}\n--\n{r_err}")

    def _parse_model(self, raw: str, model_cls: type[M], top_level_key: str | None = None) -> ParseResult[M]:
        """
        raw text -> tagged result holding a validated pydantic model.
        `top_level_key` lets a bare list be accepted where an object with that
        key is expected (models often drop the wrapper).
        """
        try:
            data = self.load_fault_tolerant_json(raw)
        except ValueError as e:
            return ParseResult.failure(raw, str(e))
        if isinstance(data, list) and top_level_key:
            data = {top_level_key: data}
        if not isinstance(data, dict):
            return ParseResult.failure(raw, f"expected a JSON object, got {type(data).__name__}")
        # prose like "Note: ..." loads as a mapping too; require at least one expected key
        known = set()
        for name, f in model_cls.model_fields.items():
            known.add(name)
            if f.alias:
                known.add(f.alias)
        if not known & set(data):
            return ParseResult.failure(raw, f"response has none of the keys expected for {model_cls.__name__}")
        try:
            return ParseResult.success(model_cls.model_validate(data), raw)
        except ValidationError as e:
            return ParseResult.failure(raw, f"schema mismatch for {model_cls.__name__}: {e}")

    # -----------------------
    # LLM base plumbing
    # -----------------------

    def _human_message(self, text: str, images: list[bytes] | None = None) -> HumanMessage:
        if not images:
            return HumanMessage(content=text)
        blocks: list[Any] = [{"type": "text", "text": text}]
        for data in images:
            b64 = base64.b64encode(data).decode("ascii")
            blocks.append({
                "type": "image_url",
                "image_url": {"url": f"data:{guess_image_mime(data)};base64,{b64}"},
            })
        return HumanMessage(content=blocks)

    def _invoke_structured(
        self,
        llm,
        messages: list[BaseMessage],
        parse: Callable[[str], ParseResult[T]],
        label: str,
    ) -> ParseResult[T]:
        """
        One model call, parsed through `parse`. On a parse failure exactly one
        repair request is sent with the broken output; if that also fails the
        failure is returned (tagged) for the caller to handle.

        Transport errors (MaxRetryErrorsException / FatalLlmError) propagate.
        """
        logger.debug(f"==============={label} Prompt\n\n{self._message_preview(messages)}")
        raw = llm.invoke(messages)
        logger.debug(f"==============={label} Server Response\n\n{raw}")

        result = parse(raw)
        if result.ok:
            return result

        self.color_print(f"{label}: response did not parse ({result.error[:300]}). Sending repair request...", color="yellow")
        system = [m for m in messages if isinstance(m, SystemMessage)]
        repair_prompt = self.unsafe_string_format(PARSE_REPAIR_PROMPT, raw_output=raw, parse_error=result.error[:2000])
        repaired_raw = llm.invoke(system[:1] + [HumanMessage(content=repair_prompt)])
        logger.debug(f"==============={label} Repair Response\n\n{repaired_raw}")

        repaired = parse(repaired_raw)
        if repaired.ok:
            return repaired
        self.color_print(f"{label}: repair failed: {repaired.error[:300]}", color="red")
        return ParseResult.failure(repaired_raw, repaired.error)

    def _message_preview(self, messages: list[BaseMessage]) -> str:
        parts = []
        for m in messages:
            content = m.content
            if isinstance(content, list):
                content = "\n".join(
                    b.get("text", "<image>") if isinstance(b, dict) else str(b) for b in content
                )
            parts.append(f"[{m.type}]\n{content}")
        return "\n\n".join(parts)

    # -----------------------
    # Shared context for prompts
    # -----------------------

    def _fmt_value(self, value) -> str:
        return "UNKNOWN (non-authoritative)" if is_unknown(value) else str(value)

    def _shared_context_for_prompt(self, ctx: SharedContext) -> str:
        """
        Stable, sorted text digest of the shared context. Unknown markers are
        spelled out so the model does not treat them as facts.
        """
        lines: list[str] = ["## Components"]
        for cid in sorted(ctx.components):
            c = ctx.components[cid]
            lines.append(f"- {cid}: {c.product_name} | {self._fmt_value(c.description)}")
        if ctx.composition_edges:
            lines.append("## Composition")
            for e in sorted(ctx.composition_edges, key=lambda e: (e.parent, e.child)):
                lines.append(f"- {e.parent} contains {e.child}")
        if ctx.coordination_edges:
            lines.append("## Coordination")
            for e in sorted(ctx.coordination_edges, key=lambda e: (e.source, e.target, e.via)):
                lines.append(f"- {e.source} -> {e.target}" + (f" via {e.via}" if e.via else ""))

        lines.append("## State models")
        for sid in sorted(ctx.state_models):
            s = ctx.state_models[sid]
            consumers = ", ".join(s.consumers) or "none recorded"
            lines.append(
                f"- {sid}: {s.name} | {self._fmt_value(s.description)} | owner: {self._fmt_value(s.owner)} | consumers: {consumers}"
            )
        lines.append("## Events")
        for eid in sorted(ctx.events):
            ev = ctx.events[eid]
            listeners = ", ".join(ev.listeners) or "none recorded"
            lines.append(
                f"- {eid}: {ev.name} | payload: {self._fmt_value(ev.payload)} | emitter: {self._fmt_value(ev.emitter)} | listeners: {listeners}"
            )
        if ctx.data_flows:
            lines.append("## Data flows")
            for fid in sorted(ctx.data_flows):
                f = ctx.data_flows[fid]
                lines.append(f"- {fid}: {f.source} -> {f.target} | {self._fmt_value(f.description)}")

        lines.append("## Standard states")
        for name in sorted(ctx.standard_states):
            lines.append(f"- {name}: {ctx.standard_states[name]}")
        if ctx.vocabulary:
            lines.append("## Vocabulary (internal term -> product phrase)")
            for term in sorted(ctx.vocabulary):
                lines.append(f"- {term} -> {ctx.vocabulary[term]}")
        return "\n".join(lines)
