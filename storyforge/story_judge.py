# storyforge/story_judge.py

import logging

from langchain_core.messages import SystemMessage

from forge_prompts.pipeline_prompts import ITEM_JUDGE_INPUT, ITEM_JUDGE_PROMPT
from storyforge.base_utils import BaseUtils, ParseResult
from storyforge.entities import SharedContext
from storyforge.wire_schemas import JudgeRubric

logger = logging.getLogger("storyforge")


class StoryJudge(BaseUtils):
    """
    Scores a rendered item against the shared context.

    The overall score alone decides acceptance (>= threshold); the model's
    recommendation is kept on the rubric for the record.
    """

    def __init__(self, llm, *, threshold: float = 3.5):
        self.llm = llm
        self.threshold = threshold

    def judge(
        self,
        item_text: str,
        context: SharedContext,
        *,
        seed_text: str = "",
        product_context: str = "",
    ) -> ParseResult[JudgeRubric]:
        prompt = self.unsafe_string_format(
            ITEM_JUDGE_INPUT,
            product_context=product_context or "None",
            context_digest=self._shared_context_for_prompt(context),
            seed=seed_text or "None",
            item_text=item_text,
        )
        result = self._invoke_structured(
            self.llm,
            [SystemMessage(content=ITEM_JUDGE_PROMPT), self._human_message(prompt)],
            lambda raw: self._parse_model(raw, JudgeRubric),
            label="Judge",
        )
        if result.ok:
            r = result.value
            logger.info(
                f"Judge: overall={r.overall_score:.2f} sep={r.section_separation.score} "
                f"corr={r.correctness_vs_context.score} test={r.testability.score} "
                f"compl={r.completeness.score} rec={r.recommendation} rel={len(r.new_relationships)}"
            )
        return result

    def passes(self, rubric: JudgeRubric) -> bool:
        return rubric.overall_score >= self.threshold

    def feedback_for_rewrite(self, rubric: JudgeRubric) -> str:
        """
        Flattens the rubric into the bullet list the rewrite advisor works from.
        """
        lines: list[str] = []
        sep = rubric.section_separation
        lines.append(f"Section separation {sep.score}/5: {sep.reasoning}".rstrip(": "))
        for v in sep.violations:
            where = f"[{v.section}] " if v.section else ""
            fix = f" -> {v.suggested_rewrite}" if v.suggested_rewrite else ""
            lines.append(f"  - {where}\"{v.quote}\"{fix}")

        corr = rubric.correctness_vs_context
        lines.append(f"Correctness vs shared context {corr.score}/5: {corr.reasoning}".rstrip(": "))
        lines += [f"  - hallucination: {h}" for h in corr.hallucinations]

        test = rubric.testability
        lines.append(f"Testability {test.score}/5: {test.reasoning}".rstrip(": "))
        lines += [f"  - outcome AC: {i}" for i in test.outcome_ac_issues]
        lines += [f"  - system AC: {i}" for i in test.system_ac_issues]

        comp = rubric.completeness
        lines.append(f"Completeness {comp.score}/5: {comp.reasoning}".rstrip(": "))
        lines += [f"  - missing: {m}" for m in comp.missing_elements]
        return "\n".join(lines)
