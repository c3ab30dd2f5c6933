"""
Skills Taxonomy - Keyword extraction without an LLM

Provides a canonical skill vocabulary with synonyms. The local text
generator uses it to extract requirement lists from job descriptions and
to highlight matched skills in tailored resumes.

Complexity:
    - extract_skills: O(n*m) where n=text length, m=taxonomy terms
"""

import re
from typing import Dict, Iterable, List, Set

# Structure: category -> skill -> [synonyms]
SKILLS_TAXONOMY: Dict[str, Dict[str, List[str]]] = {
    "languages": {
        "python": ["py", "python3", "cpython"],
        "javascript": ["js", "ecmascript", "es6"],
        "typescript": ["ts", "tsx"],
        "java": ["jvm", "j2ee", "jakarta"],
        "csharp": ["c#", ".net", "dotnet"],
        "go": ["golang"],
        "rust": ["rustlang"],
        "ruby": ["ror"],
        "php": ["laravel", "symfony"],
        "kotlin": ["android kotlin"],
        "swift": ["swiftui"],
        "sql": ["structured query language"],
    },
    "frontend": {
        "react": ["reactjs", "react.js", "next.js", "nextjs"],
        "angular": ["angularjs"],
        "vue": ["vuejs", "vue.js", "nuxt"],
        "html": ["html5"],
        "css": ["css3", "sass", "scss", "tailwind"],
    },
    "backend": {
        "django": ["drf", "django rest framework"],
        "flask": ["flask-restful"],
        "fastapi": ["starlette"],
        "spring": ["spring boot", "springboot"],
        "node": ["node.js", "nodejs", "express"],
        "rails": ["ruby on rails"],
    },
    "cloud": {
        "aws": ["amazon web services", "ec2", "s3", "lambda"],
        "azure": ["microsoft azure"],
        "gcp": ["google cloud", "bigquery"],
        "docker": ["containerization", "dockerfile"],
        "kubernetes": ["k8s", "helm", "kubectl"],
        "terraform": ["infrastructure as code"],
    },
    "data": {
        "postgresql": ["postgres", "psql"],
        "mysql": ["mariadb"],
        "mongodb": ["mongo"],
        "redis": [],
        "elasticsearch": ["opensearch"],
        "kafka": ["apache kafka"],
        "spark": ["pyspark", "databricks"],
    },
    "ai_ml": {
        "machine learning": ["ml", "predictive modeling"],
        "deep learning": ["neural networks"],
        "nlp": ["natural language processing"],
        "pytorch": ["torch"],
        "tensorflow": ["keras"],
        "llm": ["large language models", "langchain", "rag"],
    },
    "practices": {
        "agile": ["scrum", "kanban"],
        "ci/cd": ["continuous integration", "continuous delivery", "github actions"],
        "testing": ["unit testing", "pytest", "tdd"],
        "microservices": ["service oriented architecture"],
        "stakeholder management": ["stakeholder engagement"],
        "mentoring": ["mentorship", "coaching"],
    },
}


def _term_pattern(term: str) -> str:
    # \b fails next to symbols such as "c#" or ".net", so anchor on non-word chars
    return r"(?<![\w.#+])" + re.escape(term) + r"(?![\w#+])"


def mentions(text: str, term: str) -> bool:
    """True when 'term' appears in text as a whole word, ignoring case."""
    return re.search(_term_pattern(term.lower()), text.lower()) is not None


def normalize_skill(skill: str) -> str:
    """Lowercase and collapse whitespace so matching is case-insensitive."""
    return " ".join(skill.lower().split())


def normalize_skills(skills: Iterable[str]) -> Set[str]:
    """Normalize a collection of skill strings, dropping blanks."""
    return {normalize_skill(s) for s in skills if s and s.strip()}


def extract_skills(text: str) -> List[str]:
    """
    Extract canonical skills mentioned in text.

    Args:
        text: Job description or resume text

    Returns:
        Canonical skill names in taxonomy order, without duplicates
    """
    if not text:
        return []

    text_lower = text.lower()
    found: List[str] = []

    for skills in SKILLS_TAXONOMY.values():
        for skill, synonyms in skills.items():
            for term in [skill, *synonyms]:
                if re.search(_term_pattern(term), text_lower):
                    found.append(skill)
                    break

    return found
