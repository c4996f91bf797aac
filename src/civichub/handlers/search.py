"""Handlers for document search and generated answers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.triggers import SearchInput
from civichub.search import answer_query, search

if TYPE_CHECKING:
    from civichub.state import AppState


def _validate(params: dict[str, Any]) -> SearchInput:
    try:
        return SearchInput.model_validate(params)
    except ValueError as exc:
        raise CivicHubError(code=ErrorCode.INVALID_INPUT, message=str(exc)) from exc


async def handle(params: dict[str, Any], state: AppState) -> dict[str, Any]:
    validated = _validate(params)
    town_id = validated.town or state.settings.server.default_town
    structlog.get_logger().info("handler_called", handler="search", town=town_id)
    return await search(state, town_id, validated.q)


async def handle_answer(params: dict[str, Any], state: AppState) -> dict[str, Any]:
    validated = _validate(params)
    town_id = validated.town or state.settings.server.default_town
    structlog.get_logger().info("handler_called", handler="answer", town=town_id)
    entry = await answer_query(state, town_id, validated.q)
    return entry.model_dump(mode="json")
