"""Observation pipeline: context sampling, decisions, caching and dispatch."""

from .cache import DecisionCache, SuggestionHistory, suggestion_hash
from .context import ContextAggregator, EditingSession, compute_fingerprint, guess_language
from .decision import DecisionEngine, DecisionResult, ParsedDecision, ParseFailure, parse_decision
from .dispatcher import LoggingSink, OutputDispatcher, OutputSink
from .prompts import PROMPT_VERSION, build_prompt, system_prompt
from .scheduler import ObserverScheduler, SchedulerConfig, SchedulerState
from .triggers import TriggerBus, has_merge_conflict

__all__ = [
    "ContextAggregator",
    "DecisionCache",
    "DecisionEngine",
    "DecisionResult",
    "EditingSession",
    "LoggingSink",
    "ObserverScheduler",
    "OutputDispatcher",
    "OutputSink",
    "PROMPT_VERSION",
    "ParseFailure",
    "ParsedDecision",
    "SchedulerConfig",
    "SchedulerState",
    "SuggestionHistory",
    "TriggerBus",
    "build_prompt",
    "compute_fingerprint",
    "guess_language",
    "has_merge_conflict",
    "parse_decision",
    "suggestion_hash",
    "system_prompt",
]
