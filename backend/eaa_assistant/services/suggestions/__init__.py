"""Personalized follow-up suggestions."""

from eaa_assistant.services.suggestions.engine import SuggestionEngine
from eaa_assistant.services.suggestions.models import SuggestionResult

__all__ = ["SuggestionEngine", "SuggestionResult"]
