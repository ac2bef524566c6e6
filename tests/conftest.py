# tests/conftest.py — v1
"""Shared test fixtures for all unit tests.

Provides a scripted vision-LLM client, a fake image generator, a SQLite
store and local object storage in temp directories, and an orchestrator
wired from them. No external services are contacted.
"""

from __future__ import annotations

import asyncio
import json
import random
from typing import Any

import pytest

from stagegate.api.facade import build_orchestrator
from stagegate.api.models import CreatePipelineRequest, SourceImage
from stagegate.config.settings import Settings, load_settings
from stagegate.core.models import (
    AspectRatio,
    Artifact,
    CandidateSummary,
    Pipeline,
    QualityTier,
    StepOutput,
    step_key,
)
from stagegate.gateway.base_image_generator import BaseImageGenerator, GeneratedImage
from stagegate.llm.base_client import BaseLLMClient
from stagegate.llm.models import ImageInput, LLMResponse, Message
from stagegate.storage.local_storage import LocalObjectStorage
from stagegate.store.sqlite_store import SqlitePipelineStore


def verdict_json(
    decision: str = "approved",
    score: int | None = None,
    codes: tuple[str, ...] = (),
    corrective: str = "",
) -> str:
    """Judge response payload as the judge model would return it."""
    if score is None:
        score = 90 if decision == "approved" else 35
    return json.dumps(
        {
            "decision": decision,
            "score": score,
            "reasons": [{"code": c, "description": f"{c.lower()} detected"} for c in codes],
            "corrective_instruction": corrective,
        }
    )


# === FAKES ===


class FakeImageGenerator(BaseImageGenerator):
    """Returns distinct PNG-like payloads and records every call."""

    def __init__(self, model: str = "fake-image-model") -> None:
        self._model = model
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.delay_s = 0.0

    @property
    def model_name(self) -> str:
        return self._model

    async def generate(
        self,
        prompt: str,
        reference_images: list[ImageInput],
        quality_tier: QualityTier,
        aspect_ratio: AspectRatio,
        temperature: float,
        seed: int | None = None,
    ) -> GeneratedImage:
        self.calls.append(
            {
                "prompt": prompt,
                "reference_images": reference_images,
                "quality_tier": quality_tier,
                "aspect_ratio": aspect_ratio,
                "temperature": temperature,
                "seed": seed,
            }
        )
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return GeneratedImage(
            data=f"image-{len(self.calls)}".encode(),
            mime_type="image/png",
            model=self._model,
            latency_ms=5,
        )


class ScriptedLLMClient(BaseLLMClient):
    """Vision client that replays scripted responses.

    Items are response strings or exceptions to raise. When the script runs
    out, ``default`` is returned.
    """

    def __init__(self, default: str | None = None, model: str = "fake-judge") -> None:
        self._model = model
        self.default = default if default is not None else verdict_json()
        self.responses: list[str | Exception] = []
        self.calls: list[dict[str, Any]] = []
        self.stop_reason = "end"

    def script(self, *items: str | Exception) -> None:
        self.responses.extend(items)

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def model_name(self) -> str:
        return self._model

    async def complete_with_vision(
        self,
        messages: list[Message],
        images: list[ImageInput],
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> LLMResponse:
        self.calls.append(
            {"messages": messages, "images": images, "system": system, "max_tokens": max_tokens}
        )
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        return LLMResponse(
            content=item,
            model=self._model,
            provider="fake",
            latency_ms=3,
            stop_reason=self.stop_reason,  # type: ignore[arg-type]
        )


# === FIXTURES: Infrastructure ===


@pytest.fixture
def settings(tmp_path) -> Settings:
    return load_settings(
        _env_file=None,
        store_path=str(tmp_path / "pipelines.db"),
        storage_root=tmp_path / "objects",
        google_api_key="test-key",
    )


@pytest.fixture
def store(settings):
    s = SqlitePipelineStore(settings.resolved_store_path)
    yield s
    s.close()


@pytest.fixture
def storage(settings) -> LocalObjectStorage:
    return LocalObjectStorage(settings.storage_root)


@pytest.fixture
def generator() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def judge_client() -> ScriptedLLMClient:
    return ScriptedLLMClient()


@pytest.fixture
def analysis_client() -> ScriptedLLMClient:
    return ScriptedLLMClient(
        default=json.dumps(
            {
                "rooms": [
                    {"space_id": "living", "room_name": "Living Room", "detected_items": ["sofa"]},
                    {"space_id": "bed1", "room_name": "Room", "detected_items": ["double bed"]},
                ],
                "zones": [],
                "overall_notes": "two rooms",
            }
        ),
        model="fake-analysis",
    )


@pytest.fixture
def orchestrator(settings, store, storage, generator, judge_client, analysis_client):
    return build_orchestrator(
        settings,
        store=store,
        storage=storage,
        generator=generator,
        judge_client=judge_client,
        analysis_client=analysis_client,
        autostart_retries=False,
        rng=random.Random(42),
    )


# === FIXTURES: Pipeline builders ===


@pytest.fixture
def make_pipeline(orchestrator, store):
    """Create a pipeline and optionally move it to ``phase``."""

    async def _make(phase: str = "upload", owner: str = "alice", **fields: Any) -> Pipeline:
        pipeline = await orchestrator.create_pipeline(
            CreatePipelineRequest(owner=owner, source=SourceImage(content=b"floorplan-bytes"))
        )
        if phase == "upload" and not fields:
            return pipeline

        def mutate(draft: Pipeline) -> None:
            draft.move_to(phase)
            for name, value in fields.items():
                setattr(draft, name, value)

        return await store.update(pipeline.id, mutate)

    return _make


@pytest.fixture
def seed_output(store, storage):
    """Record a stored step output with real artifacts; returns artifact ids."""

    async def _seed(
        pipeline_id: str,
        step: int,
        count: int = 1,
        decision: str = "approved",
        manual_approved: bool = True,
        space_ids: list[str] | None = None,
        camera_angle: str | None = None,
    ) -> list[str]:
        pipeline = await store.load(pipeline_id)
        ids: list[str] = []
        candidates: list[CandidateSummary] = []
        for i in range(count):
            artifact = Artifact(
                pipeline_id=pipeline_id,
                owner=pipeline.owner,
                path=f"pipelines/{pipeline_id}/{step_key(step)}/seed-{i}.png",
                step=step,
            )
            await storage.write(artifact.path, f"seed-{step}-{i}".encode(), "image/png")
            await store.register_artifact(artifact)
            ids.append(artifact.id)
            candidates.append(
                CandidateSummary(
                    artifact_id=artifact.id,
                    decision=decision,
                    space_id=space_ids[i] if space_ids else None,
                    camera_angle=camera_angle,
                )
            )

        def mutate(draft: Pipeline) -> None:
            draft.step_outputs[step_key(step)] = StepOutput(
                step=step,
                candidates=candidates,
                decision=decision,
                manual_approved=manual_approved,
            )

        await store.update(pipeline_id, mutate)
        return ids

    return _seed


@pytest.fixture
def verdict():
    """The ``verdict_json`` builder, for scripting judge responses."""
    return verdict_json
