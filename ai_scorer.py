"""AI-assisted scoring through an OpenAI-compatible chat completions endpoint.

The grading engine treats the scorer as an untrusted, fallible collaborator:
every failure surfaces as :class:`engines.validation.AIScorerError` so callers
can degrade to placeholder feedback.
"""

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import requests
from pydantic import BaseModel, ValidationError

from engines.validation import AIScorerError, sanitize_for_prompt
from env_validation import DEFAULT_LLM_URL, get_env_int
from rubric_levels import RUBRIC_LEVELS
from schemas import Assessment, ComponentSkill, Grade, SkillScore, Submission, dump_for_prompt, parse_json_safe

logger = logging.getLogger(__name__)
_LLM_LOGGER = logging.getLogger("grading.llm")

MODEL_ID = os.getenv("MODEL_ID", "gpt-4.1")
LLM_URL = os.getenv("LLM_URL", DEFAULT_LLM_URL)
REFERENCE_TEXT_LIMIT = 8000

SKILL_SYSTEM_PROMPT = (
    "You are an expert in competency-based assessment. Provide accurate, fair "
    "evaluations of student component skill development."
)

FEEDBACK_SYSTEM_PROMPT = (
    "You are an encouraging teacher writing feedback directly to a student. "
    "Be specific, reference the skills that were assessed, and suggest concrete next steps."
)

SKILL_PROMPT_TEMPLATE = """Analyze the student's submission to determine their current level for this specific component skill.

Component Skill: {skill_name}
Skill Description: {skill_description}
Competency Area: {competency_name}
Learning Outcome: {learner_outcome_name}

Assessment Questions: {questions}
Student Submission Responses: {responses}
{reference_block}
Evaluate the student's performance on this component skill using the rubric levels:

{rubric_overview}

Respond with exactly one JSON object and nothing else:
{{"rubricLevel": "emerging|developing|proficient|applying", "feedback": "<specific feedback about the skill and growth areas>", "score": 1|2|3|4}}"""

SUMMARY_PROMPT_TEMPLATE = """Write a short feedback narrative (at most 200 words) for the student based on these skill grades.

Student Responses: {responses}

Skill Grades:
{grade_lines}

Address the student directly. Highlight strengths first, then the most important area to improve."""

QUESTION_PROMPT_TEMPLATE = """Give focused feedback on one answer.

Question: {question}
Student Answer: {response}
Target Rubric Level: {rubric_level}

Explain in 2-4 sentences what the answer does well and what would move it to the next rubric level."""


class _SkillReply(BaseModel):
    rubricLevel: str = "emerging"
    feedback: str = ""
    score: Optional[Any] = None


class AIScorer:
    """Interface consumed by the grading orchestrator."""

    def score_skills(
        self,
        submission: Submission,
        assessment: Assessment,
        skills: Sequence[ComponentSkill],
        reference_text: Optional[str] = None,
    ) -> List[SkillScore]:
        raise NotImplementedError

    def summarize(self, submission: Submission, grades: Sequence[Grade]) -> str:
        raise NotImplementedError

    def score_single_question(self, question_text: str, response_text: str, rubric_level: str) -> str:
        raise NotImplementedError


class LLMScorer(AIScorer):
    """Scorer backed by a chat completions endpoint reached with ``requests``."""

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[int] = None,
        api_key: Optional[str] = None,
        temperature: float = 0.3,
    ):
        self.url = url or LLM_URL
        self.model = model or MODEL_ID
        self.timeout = timeout if timeout is not None else get_env_int("LLM_TIMEOUT", 60)
        self.api_key = api_key if api_key is not None else os.getenv("LLM_API_KEY")
        self.temperature = temperature

    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _chat(self, messages: List[Dict[str, str]], *, purpose: str, json_mode: bool = False) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        request_id = str(uuid4())
        start = time.perf_counter()
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        status = "error"
        try:
            try:
                response = requests.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
            except requests.Timeout as exc:
                raise AIScorerError(f"LLM timeout after {self.timeout}s") from exc
            except requests.HTTPError as exc:
                code = exc.response.status_code if exc.response is not None else "?"
                raise AIScorerError(f"LLM-HTTP {code}") from exc
            except (requests.RequestException, ValueError) as exc:
                raise AIScorerError(f"LLM error: {exc}") from exc

            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                tokens_in = usage.get("prompt_tokens")
                tokens_out = usage.get("completion_tokens")

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as exc:
                raise AIScorerError("Unexpected LLM response shape") from exc
            if not isinstance(content, str):
                raise AIScorerError("LLM returned no text content")
            status = "ok"
            return content
        finally:
            log_record = {
                "event": "llm_call",
                "request_id": request_id,
                "purpose": purpose,
                "model": self.model,
                "status": status,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))

    # ------------------------------------------------------------------
    def score_skills(
        self,
        submission: Submission,
        assessment: Assessment,
        skills: Sequence[ComponentSkill],
        reference_text: Optional[str] = None,
    ) -> List[SkillScore]:
        questions = dump_for_prompt([q.model_dump() for q in assessment.questions])
        responses = dump_for_prompt(submission.responses)
        reference_block = ""
        if reference_text:
            reference_block = (
                "\nReference Material (from the attached assessment document):\n"
                f"{sanitize_for_prompt(reference_text, REFERENCE_TEXT_LIMIT)}\n"
            )

        results: List[SkillScore] = []
        for skill in skills:
            prompt = SKILL_PROMPT_TEMPLATE.format(
                skill_name=skill.name,
                skill_description=skill.description or "Not provided",
                competency_name=skill.competency_name or "Not provided",
                learner_outcome_name=skill.learner_outcome_name or "Not provided",
                questions=questions,
                responses=responses,
                reference_block=reference_block,
                rubric_overview=RUBRIC_LEVELS.formatted_overview(),
            )
            reply = self._chat(
                [
                    {"role": "system", "content": SKILL_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                purpose="score_skill",
                json_mode=True,
            )
            try:
                parsed = parse_json_safe(reply, _SkillReply)
            except (ValidationError, ValueError) as exc:
                raise AIScorerError(f"Unparseable skill grade for skill {skill.id}") from exc

            level = RUBRIC_LEVELS.normalize(parsed.rubricLevel) or "emerging"
            results.append(
                SkillScore(
                    component_skill_id=skill.id,
                    rubric_level=level,
                    score=RUBRIC_LEVELS.score_for(level),
                    feedback=parsed.feedback or "",
                )
            )
        return results

    def summarize(self, submission: Submission, grades: Sequence[Grade]) -> str:
        grade_lines = "\n".join(
            "- {name}: {level} ({score}) {feedback}".format(
                name=grade.component_skill_name or f"Skill {grade.component_skill_id}",
                level=grade.rubric_level or "ungraded",
                score=grade.score if grade.score is not None else "-",
                feedback=sanitize_for_prompt(grade.feedback or "", 500),
            )
            for grade in grades
        ) or "- No skill grades recorded."
        prompt = SUMMARY_PROMPT_TEMPLATE.format(
            responses=dump_for_prompt(submission.responses),
            grade_lines=grade_lines,
        )
        reply = self._chat(
            [
                {"role": "system", "content": FEEDBACK_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            purpose="summarize",
        )
        return reply.strip()

    def score_single_question(self, question_text: str, response_text: str, rubric_level: str) -> str:
        prompt = QUESTION_PROMPT_TEMPLATE.format(
            question=question_text,
            response=response_text,
            rubric_level=RUBRIC_LEVELS.display_name(rubric_level),
        )
        reply = self._chat(
            [
                {"role": "system", "content": FEEDBACK_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            purpose="question_feedback",
        )
        return reply.strip()
