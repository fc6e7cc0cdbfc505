"""
Pytest configuration and fixtures for pr-themes tests.
"""

import asyncio
import json
import re
from typing import Any, Callable

import pytest

from pr_themes.adaptive_batching import AdaptiveBatchingController
from pr_themes.batch_processor import BatchProcessor
from pr_themes.config import (
    BatchConfig,
    CacheConfig,
    ConsolidationConfig,
    ExpansionConfig,
    QueueConfig,
    SimilarityConfig,
    ThemesConfig,
)
from pr_themes.models import ThemeCandidate
from pr_themes.prompt_service import PromptService
from pr_themes.request_queue import RequestQueue
from pr_themes.response_cache import ResponseCache
from pr_themes.retry import RetryPolicy
from pr_themes.utils import Clock


class FakeClock(Clock):
    """Virtual time: sleeping advances the clock instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def monotonic(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += max(0.0, seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self._now += seconds


ITEM_HEADER = re.compile(r"^--- (?:pairId|itemId): (\S+) ---$", re.MULTILINE)
PAIR_NAMES = re.compile(r"^Theme 1: ([^\n]*)$.*?^Theme 2: ([^\n]*)$", re.MULTILINE | re.DOTALL)
LEVEL_NAMES = re.compile(r"^Theme 1 \(level (\d+)\): ([^\n]*)$.*?^Theme 2 \(level (\d+)\): ([^\n]*)$", re.MULTILINE | re.DOTALL)
THEME_NAME = re.compile(r"^Theme: (.*)$", re.MULTILINE)
DEPTH = re.compile(r"^Depth: (\d+)$", re.MULTILINE)
CURRENT_NAME = re.compile(r"^Current name: (.*)$", re.MULTILINE)
DOMAIN_LINE = re.compile(r"^- (.+?): ", re.MULTILINE)


def split_items(prompt: str) -> list[tuple[str, str]]:
    """(correlation id, item body) for every item of a batch prompt."""
    headers = list(ITEM_HEADER.finditer(prompt))
    items = []
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(prompt)
        items.append((header.group(1), prompt[header.end():end]))
    return items


class ScriptedModel:
    """
    Deterministic stand-in for the model endpoint.

    Answers single and batch prompts by parsing the theme names out of the
    prompt text and asking the per-type handlers what to say.
    """

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.merge_pairs: set[frozenset[str]] = set()
        self.veto_pairs: set[frozenset[str]] = set()
        self.malformed_contexts: set[str] = set()
        self.fail_contexts: dict[str, BaseException] = {}
        self.expansion_handler: Callable[[str, int], dict[str, Any]] = self.never_expand
        self.cross_level_handler: Callable[[str, str], dict[str, Any]] = self.always_distinct
        self.domain_handler: Callable[[list[str]], dict[str, Any]] = lambda names: {"domains": []}

    def contexts(self) -> list[str]:
        return [context for context, _ in self.calls]

    async def __call__(self, prompt: str, context: str = "general") -> str:
        self.calls.append((context, prompt))
        await asyncio.sleep(0)
        if context in self.fail_contexts:
            raise self.fail_contexts[context]
        if context in self.malformed_contexts:
            return "Sorry, I could not produce JSON for this one."

        kind = context.removeprefix("batch-")
        if context.startswith("batch-"):
            results = []
            for item_id, body in split_items(prompt):
                answer = self.answer(kind, body)
                answer["pairId" if kind == "similarity" else "itemId"] = item_id
                results.append(answer)
            return json.dumps({"results": results})
        return "Here is the analysis:\n```json\n" + json.dumps(self.answer(kind, prompt)) + "\n```"

    def answer(self, kind: str, text: str) -> dict[str, Any]:
        if kind in ("similarity", "similarity-analysis"):
            name1, name2 = PAIR_NAMES.search(text).groups()
            return self.similarity(name1.strip(), name2.strip())
        if kind in ("expansion", "theme-expansion"):
            name = THEME_NAME.search(text).group(1).strip()
            return self.expansion_handler(name, int(DEPTH.search(text).group(1)))
        if kind in ("cross-level", "cross-level-analysis"):
            match = LEVEL_NAMES.search(text)
            return self.cross_level_handler(match.group(2).strip(), match.group(4).strip())
        if kind in ("domain", "domain-classification"):
            return self.domain_handler(DOMAIN_LINE.findall(text))
        if kind == "theme-naming":
            return {"themeName": f"Refined {CURRENT_NAME.search(text).group(1).strip()}", "reasoning": "test"}
        raise AssertionError(f"unexpected prompt kind: {kind}")

    def similarity(self, name1: str, name2: str) -> dict[str, Any]:
        pair = frozenset((name1, name2))
        if pair in self.merge_pairs:
            return {
                "shouldMerge": True, "confidence": 0.9, "reasoning": "same feature",
                "nameScore": 0.5, "descriptionScore": 0.8, "patternScore": 0.7,
                "businessScore": 0.8, "semanticScore": 0.9,
            }
        return {
            "shouldMerge": False, "confidence": 0.9 if pair in self.veto_pairs else 0.6,
            "reasoning": "different concerns",
            "nameScore": 0.1, "descriptionScore": 0.1, "patternScore": 0.1,
            "businessScore": 0.1, "semanticScore": 0.2,
        }

    @staticmethod
    def never_expand(name: str, depth: int) -> dict[str, Any]:
        return {"shouldExpand": False, "confidence": 0.8, "subThemes": [], "reasoning": "cohesive"}

    @staticmethod
    def always_expand(name: str, depth: int) -> dict[str, Any]:
        return {
            "shouldExpand": True,
            "confidence": 0.9,
            "subThemes": [
                {"name": f"{name} / part a", "description": "first part", "relatedFiles": []},
                {"name": f"{name} / part b", "description": "second part", "relatedFiles": []},
            ],
            "reasoning": "always split",
        }

    @staticmethod
    def always_distinct(name1: str, name2: str) -> dict[str, Any]:
        return {
            "similarityScore": 0.2, "relationshipType": "distinct", "action": "keep_separate",
            "confidence": 0.8, "reasoning": "different",
        }


def make_candidate(
    candidate_id: str,
    name: str,
    files: list[str] | None = None,
    description: str = "",
    confidence: float = 0.8,
    snippets: list[str] | None = None,
) -> ThemeCandidate:
    return ThemeCandidate(
        id=candidate_id,
        name=name,
        description=description or f"Changes for {name.lower()}",
        affected_files=files or [f"src/{candidate_id}.ts"],
        code_snippets=snippets or [],
        confidence=confidence,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scripted_model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def queue_config() -> QueueConfig:
    """Queue settings with no dispatch spacing."""
    return QueueConfig(
        max_concurrent_requests=4,
        min_request_interval=0.0,
        poll_interval=0.01,
        circuit_breaker_cooldown=5.0,
        circuit_breaker_poll_interval=0.5,
        rate_limit_base_delay=0.1,
    )


@pytest.fixture
def batch_config() -> BatchConfig:
    return BatchConfig(poll_interval=0.01)


@pytest.fixture
def themes_config(queue_config: QueueConfig, batch_config: BatchConfig) -> ThemesConfig:
    """Small, fast configuration for end-to-end runs."""
    return ThemesConfig(
        queue=queue_config,
        cache=CacheConfig(),
        batch=batch_config,
        similarity=SimilarityConfig(),
        consolidation=ConsolidationConfig(enable_domain_grouping=False),
        expansion=ExpansionConfig(max_depth=4, concurrency=3),
    )


@pytest.fixture
def request_queue(queue_config: QueueConfig, fake_clock: FakeClock) -> RequestQueue:
    return RequestQueue(queue_config, fake_clock, RetryPolicy(clock=fake_clock))


@pytest.fixture
def response_cache(fake_clock: FakeClock) -> ResponseCache:
    return ResponseCache(CacheConfig(), fake_clock)


@pytest.fixture
def prompt_service(scripted_model, request_queue, response_cache, fake_clock) -> PromptService:
    return PromptService(scripted_model, request_queue, response_cache, fake_clock)


@pytest.fixture
def batch_processor(prompt_service, batch_config, fake_clock) -> BatchProcessor:
    return BatchProcessor(
        prompt_service, AdaptiveBatchingController(batch_config, fake_clock), batch_config, fake_clock
    )
