"""
Text Generation - Implementations of the text-generation capability

Providers:
    - OpenAITextGenerator: Chat-completion backed tailoring, requirement
      extraction and question answering
    - LocalTextGenerator: Deterministic, taxonomy-based fallback with no
      network calls (development and tests)

Both implement ``autoapply.services.capabilities.TextGenerator``.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from autoapply.errors import PermanentCapabilityError
from autoapply.services.capabilities import TextGenerator, translate_openai_error
from autoapply.services.skills import extract_skills, mentions, normalize_skill

logger = logging.getLogger(__name__)

CAPABILITY = "text_generation"

TAILOR_SYSTEM_PROMPT = (
    "You rewrite resumes for a specific job. Keep every fact truthful, keep the "
    "candidate's history intact, reorder and rephrase to foreground experience "
    "relevant to the job requirements. Return plain text only."
)

REQUIREMENTS_SYSTEM_PROMPT = (
    "Extract the concrete skills and technologies a job description requires. "
    'Respond with JSON: {"requirements": ["skill", ...]} using short lowercase terms.'
)

ANSWERS_SYSTEM_PROMPT = (
    "You answer job application form questions for a candidate, using only facts "
    "from their profile and resume. Be concise. Respond with JSON mapping each "
    "question verbatim to its answer."
)


class OpenAITextGenerator:
    """
    OpenAI chat-completion text generator.

    Example:
        >>> generator = OpenAITextGenerator(api_key="sk-...")
        >>> resume = await generator.tailor(master, description, ["python"])
    """

    def __init__(self, api_key: str, model: str = "gpt-4o-mini") -> None:
        self.api_key = api_key
        self.model = model
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def _complete(
        self,
        system: str,
        user: str,
        json_mode: bool = False,
    ) -> str:
        client = self._get_client()
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=0.2,
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(CAPABILITY, e) from e

        content = response.choices[0].message.content
        if not content:
            raise PermanentCapabilityError(CAPABILITY, "empty completion")
        return content

    def _parse_json(self, content: str) -> Any:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise PermanentCapabilityError(CAPABILITY, f"invalid JSON response: {e}") from e

    async def tailor(
        self,
        master_resume: str,
        job_description: str,
        requirements: List[str],
    ) -> str:
        prompt = (
            f"Job requirements: {', '.join(requirements) or 'none listed'}\n\n"
            f"Job description:\n{job_description}\n\n"
            f"Master resume:\n{master_resume}"
        )
        return (await self._complete(TAILOR_SYSTEM_PROMPT, prompt)).strip()

    async def extract_requirements(self, job_description: str) -> List[str]:
        content = await self._complete(
            REQUIREMENTS_SYSTEM_PROMPT, job_description, json_mode=True
        )
        data = self._parse_json(content)
        requirements = data.get("requirements", []) if isinstance(data, dict) else []
        return [str(r).strip() for r in requirements if str(r).strip()]

    async def answer_questions(
        self,
        questions: List[str],
        profile: Dict[str, Any],
        resume: str,
    ) -> Dict[str, str]:
        prompt = (
            f"Profile:\n{json.dumps(profile, default=str)}\n\n"
            f"Resume:\n{resume}\n\n"
            f"Questions:\n{json.dumps(questions)}"
        )
        content = await self._complete(ANSWERS_SYSTEM_PROMPT, prompt, json_mode=True)
        data = self._parse_json(content)
        if not isinstance(data, dict):
            raise PermanentCapabilityError(CAPABILITY, "answers must be a JSON object")
        return {q: str(data.get(q, "")) for q in questions}


class LocalTextGenerator:
    """
    Deterministic text generator that needs no model.

    - tailor(): prefixes the master resume with a summary of the skills it
      shares with the job requirements
    - extract_requirements(): taxonomy keyword extraction
    - answer_questions(): answers contact questions from the profile and
      leaves the rest for the user
    """

    PROFILE_FIELDS = {
        "name": "full_name",
        "email": "email",
        "phone": "phone",
        "location": "location",
        "city": "location",
    }

    async def tailor(
        self,
        master_resume: str,
        job_description: str,
        requirements: List[str],
    ) -> str:
        if not master_resume.strip():
            raise PermanentCapabilityError(CAPABILITY, "master resume is empty")

        resume_skills = set(extract_skills(master_resume))
        relevant = [
            r for r in requirements
            if normalize_skill(r) in resume_skills or mentions(master_resume, normalize_skill(r))
        ]
        if not relevant:
            return master_resume.strip()

        summary = "Relevant skills: " + ", ".join(relevant)
        return f"{summary}\n\n{master_resume.strip()}"

    async def extract_requirements(self, job_description: str) -> List[str]:
        return extract_skills(job_description)

    async def answer_questions(
        self,
        questions: List[str],
        profile: Dict[str, Any],
        resume: str,
    ) -> Dict[str, str]:
        answers: Dict[str, str] = {}
        for question in questions:
            q_lower = question.lower()
            answer = ""
            for keyword, field in self.PROFILE_FIELDS.items():
                if keyword in q_lower and profile.get(field):
                    answer = str(profile[field])
                    break
            if not answer and "skill" in q_lower:
                answer = ", ".join(profile.get("skills") or extract_skills(resume))
            answers[question] = answer
        return answers


def get_text_generator(
    provider_name: str = "openai",
    api_key: Optional[str] = None,
    model_name: Optional[str] = None,
) -> TextGenerator:
    """
    Factory function to create a text generator.

    Args:
        provider_name: "openai" or "local"
        api_key: Required for OpenAI
        model_name: Optional chat model override

    Raises:
        ValueError: If provider is unknown or required args missing
    """
    provider_name = provider_name.lower()

    if provider_name == "openai":
        if not api_key:
            raise ValueError("OpenAI text generation requires api_key")
        return OpenAITextGenerator(api_key=api_key, model=model_name or "gpt-4o-mini")

    elif provider_name == "local":
        return LocalTextGenerator()

    else:
        raise ValueError(
            f"Unknown text provider: {provider_name}. Supported: openai, local"
        )
