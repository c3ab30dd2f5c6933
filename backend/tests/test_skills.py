"""
Tests for the skills taxonomy.

Run with: cd backend && pytest tests/test_skills.py -v

Tests cover:
- Canonical extraction with synonyms
- Whole-word matching around symbols
- Normalization used by keyword scoring
- Missing requirements for the feed
"""
import pytest
from unittest.mock import MagicMock

from autoapply.services.matcher import missing_requirements
from autoapply.services.skills import extract_skills, mentions, normalize_skill, normalize_skills


# ==============================================================================
# Extraction
# ==============================================================================

class TestExtractSkills:
    """Tests for taxonomy keyword extraction."""

    def test_extracts_canonical_names(self):
        skills = extract_skills("Senior engineer: Python, FastAPI, PostgreSQL and Docker")

        assert skills == ["python", "fastapi", "docker", "postgresql"]

    def test_synonyms_map_to_canonical_skill(self):
        assert extract_skills("Golang services on k8s") == ["go", "kubernetes"]

    def test_symbols_match_as_whole_terms(self):
        assert "csharp" in extract_skills("Backend in C# and .NET")

    def test_substrings_do_not_match(self):
        """'javascript' must not also yield 'java'."""
        assert extract_skills("Modern JavaScript") == ["javascript"]

    def test_no_duplicates(self):
        assert extract_skills("Python, python3 and more Python") == ["python"]

    def test_empty_text(self):
        assert extract_skills("") == []


# ==============================================================================
# Normalization
# ==============================================================================

class TestNormalization:
    """Tests for case and whitespace normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [("Python", "python"), ("  Machine   Learning ", "machine learning"), ("SQL", "sql")],
    )
    def test_normalize_skill(self, raw, expected):
        assert normalize_skill(raw) == expected

    def test_normalize_skills_drops_blanks(self):
        assert normalize_skills(["Python", "python", "", "  ", "Go"]) == {"python", "go"}

    def test_mentions_is_case_insensitive(self):
        assert mentions("Loves PYTHON", "python")
        assert not mentions("Loves pythonic code", "python")


# ==============================================================================
# Missing Requirements
# ==============================================================================

class TestMissingRequirements:
    """Tests for the feed's missing-skills list."""

    def test_lists_uncovered_requirements(self):
        profile = MagicMock(skills=["Python", "SQL"])
        job = MagicMock(requirements=["python", "Go", "sql", "go"])

        assert missing_requirements(profile, job) == ["go"]

    def test_no_requirements(self):
        profile = MagicMock(skills=["Python"])
        job = MagicMock(requirements=None)

        assert missing_requirements(profile, job) == []
