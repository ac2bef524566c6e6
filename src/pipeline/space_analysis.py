# src/pipeline/space_analysis.py — v1
"""Step 0: single-attempt space analysis of the source floor plan.

One vision call lists the plan's rooms and zones. The result is parsed with
the tolerant JSON parser; a malformed or truncated response fails the step
(``space_analysis_failed``) with the raw output kept in the error details so
the caller can decide to re-run.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from stagegate.config.steps import get_step
from stagegate.core.errors import ErrorCode, StaleResultDiscarded, StepError, VersionConflict
from stagegate.core.models import (
    ErrorResult,
    Pipeline,
    PipelineEvent,
    SpaceAnalysis,
    SpaceInfo,
)
from stagegate.gateway.json_parsing import parse_json_output
from stagegate.gateway.judge_prompts import build_space_analysis_prompt
from stagegate.llm.models import ImageInput, Message
from stagegate.logging.context import clear_context, set_pipeline_context, set_step_context

if TYPE_CHECKING:
    from stagegate.llm.base_client import BaseLLMClient
    from stagegate.storage.base_object_storage import BaseObjectStorage
    from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)

START_PHASES = frozenset({"upload", "space_analysis_pending", "space_analysis_failed"})

_GENERIC_NAME = re.compile(r"^(room|space|zone|area|unknown)?\s*\d*$", re.IGNORECASE)

# First match wins; bedrooms are numbered.
_ITEM_NAMES: list[tuple[tuple[str, ...], str]] = [
    (("bed",), "Bedroom"),
    (("sofa", "couch", "armchair", "tv"), "Living Room"),
    (("stove", "oven", "fridge", "refrigerator", "cooktop"), "Kitchen"),
    (("dining table",), "Dining Room"),
    (("toilet", "shower", "bathtub", "bath"), "Bathroom"),
    (("desk",), "Office"),
    (("washer", "washing machine"), "Laundry"),
]


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def name_from_items(items: list[str]) -> str | None:
    lowered = [str(i).lower() for i in items]
    for keywords, name in _ITEM_NAMES:
        if any(k in item for item in lowered for k in keywords):
            return name
    return None


def normalize_spaces(data: dict[str, Any]) -> list[SpaceInfo]:
    """Build the space list from ``rooms`` and ``zones`` (or a flat ``spaces`` list).

    Generic names such as "Room 2" are replaced using the detected items.
    Ids are made unique.
    """
    entries: list[tuple[dict[str, Any], str]] = []
    for kind, key in (("room", "rooms"), ("zone", "zones"), ("room", "spaces")):
        listed = data.get(key)
        if not isinstance(listed, list):
            continue
        for item in listed:
            if isinstance(item, dict):
                entries.append((item, str(item.get("type") or kind)))

    spaces: list[SpaceInfo] = []
    seen_ids: set[str] = set()
    name_counts: dict[str, int] = {}
    for item, kind in entries:
        name = str(item.get("room_name") or item.get("name") or "").strip()
        if not name or _GENERIC_NAME.match(name):
            items = item.get("detected_items")
            derived = name_from_items(items if isinstance(items, list) else [])
            if derived:
                name_counts[derived] = name_counts.get(derived, 0) + 1
                name = derived if derived != "Bedroom" else f"Bedroom {name_counts[derived]}"
            elif not name:
                name = f"Space {len(spaces) + 1}"

        space_id = _slug(str(item.get("space_id") or item.get("id") or name)) or f"space_{len(spaces) + 1}"
        base_id, n = space_id, 2
        while space_id in seen_ids:
            space_id = f"{base_id}_{n}"
            n += 1
        seen_ids.add(space_id)
        spaces.append(SpaceInfo(id=space_id, name=name, type=kind))
    return spaces


def _as_error(e: StepError) -> ErrorResult:
    return ErrorResult(code=e.code.value, message=e.message, retryable=e.retryable, details=e.details)


class SpaceAnalyzer:
    """Implements ``RunSpaceAnalysis(pipeline_id)``.

    The reset counter observed when the phase moves to running fences the
    final write, so a run orphaned by a restart cannot overwrite a newer one.
    """

    def __init__(
        self,
        store: BasePipelineStore,
        storage: BaseObjectStorage,
        client: BaseLLMClient,
        max_tokens: int = 8192,
        cas_max_retries: int = 5,
    ) -> None:
        self._store = store
        self._storage = storage
        self._client = client
        self._max_tokens = max_tokens
        self._cas_max_retries = cas_max_retries

    async def run(self, pipeline_id: str, owner: str) -> Pipeline | ErrorResult:
        """Run the analysis once. Errors are returned, never raised."""
        set_pipeline_context(pipeline_id, owner)
        set_step_context(0)
        fence: int | None = None
        try:
            locked = await self._transition(
                pipeline_id, owner, START_PHASES, "space_analysis_running"
            )
            fence = locked.reset_counter
            return await self._analyze(locked, owner, fence)
        except StaleResultDiscarded as e:
            logger.info("Space analysis of %s discarded: %s", pipeline_id, e.message)
            return _as_error(e)
        except StepError as e:
            return await self._fail(pipeline_id, owner, e, fence)
        except Exception as e:
            logger.exception("Unhandled error in space analysis of %s", pipeline_id)
            error = StepError(ErrorCode.UNHANDLED_ERROR, str(e) or type(e).__name__)
            return await self._fail(pipeline_id, owner, error, fence)
        finally:
            clear_context()

    async def _fail(
        self, pipeline_id: str, owner: str, error: StepError, fence: int | None
    ) -> ErrorResult:
        if fence is not None:
            await self._mark_failed(pipeline_id, owner, error, fence)
        return _as_error(error)

    async def _transition(
        self,
        pipeline_id: str,
        owner: str,
        allowed: frozenset[str],
        target: str,
        apply=None,
        fence: int | None = None,
    ) -> Pipeline:
        def mutate(draft: Pipeline) -> None:
            if draft.owner != owner:
                raise StepError(ErrorCode.AUTH_INVALID, "pipeline is not owned by caller")
            if fence is not None and draft.reset_counter != fence:
                raise StaleResultDiscarded(draft.id, fence, draft.reset_counter)
            if draft.phase not in allowed:
                raise StepError(
                    ErrorCode.PHASE_MISMATCH,
                    f"space analysis cannot run from {draft.phase!r}",
                    details={"phase": draft.phase, "step": draft.current_step},
                )
            draft.move_to(target)
            if apply is not None:
                apply(draft)

        try:
            return await self._store.update(pipeline_id, mutate, self._cas_max_retries)
        except VersionConflict as e:
            raise StepError(ErrorCode.PERSISTENCE_WRITE_ERROR, str(e)) from e

    async def _analyze(self, pipeline: Pipeline, owner: str, fence: int) -> Pipeline:
        source = await self._store.get_artifact(pipeline.source_artifact_id)
        if source is None:
            raise StepError(ErrorCode.INPUT_IMAGE_MISSING, "source artifact is not registered")
        try:
            data = await self._storage.read(source.path)
        except (OSError, KeyError) as e:
            raise StepError(
                ErrorCode.INPUT_IMAGE_MISSING, f"source image could not be read: {e}"
            ) from e

        system, text = build_space_analysis_prompt(get_step(0).base_prompt)
        try:
            response = await self._client.complete_with_vision(
                messages=[Message(role="user", content=text)],
                images=[ImageInput(data=data, media_type=source.mime_type, source_id=source.id)],
                system=system,
                max_tokens=self._max_tokens,
                temperature=0.0,
                json_output=True,
            )
        except Exception as e:
            logger.warning("Space analysis call failed: %s", e)
            raise StepError(
                ErrorCode.AI_API_ERROR, f"space analysis call failed: {e}", retryable=True
            ) from e

        parsed = parse_json_output(response.content, truncated=response.truncated)
        if not parsed.success or not isinstance(parsed.data, dict):
            code = (
                ErrorCode.TRUNCATED_PARSE_FAILED
                if parsed.error_code == "TRUNCATED_PARSE_FAILED"
                else ErrorCode.PARSE_FAILED
            )
            raise StepError(
                code,
                parsed.error or "space analysis output is not a JSON object",
                retryable=True,
                details=parsed.diagnostics(),
            )

        spaces = normalize_spaces(parsed.data)
        analysis = SpaceAnalysis(
            spaces=spaces,
            summary=str(parsed.data.get("overall_notes") or ""),
            model=response.model,
        )

        def apply(draft: Pipeline) -> None:
            draft.space_analysis = analysis
            draft.mode = "multi_space" if len(spaces) > 1 else "linear"
            draft.last_error = None

        committed = await self._transition(
            pipeline.id,
            owner,
            frozenset({"space_analysis_running"}),
            "space_analysis_complete",
            apply,
            fence=fence,
        )
        await self._store.record_event(
            PipelineEvent(
                pipeline_id=pipeline.id,
                owner=owner,
                step=0,
                type="step_complete",
                message=f"space analysis found {len(spaces)} space(s)",
                data={"spaces": [s.id for s in spaces]},
            )
        )
        logger.info("Space analysis complete: %d spaces", len(spaces))
        return committed

    async def _mark_failed(
        self, pipeline_id: str, owner: str, error: StepError, fence: int
    ) -> None:
        def apply(draft: Pipeline) -> None:
            draft.last_error = error.last_error

        try:
            await self._transition(
                pipeline_id,
                owner,
                frozenset({"space_analysis_running"}),
                "space_analysis_failed",
                apply,
                fence=fence,
            )
            await self._store.record_event(
                PipelineEvent(
                    pipeline_id=pipeline_id,
                    owner=owner,
                    step=0,
                    type="step_error",
                    message=error.last_error,
                    data={"code": error.code.value, "retryable": error.retryable},
                )
            )
        except StepError as e:
            logger.error("Could not mark space analysis failed: %s", e)

