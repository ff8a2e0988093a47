# nutrizen/services/ai_service.py
"""
LLM gateway calls: food-photo nutrition estimates and ingredient substitutions.

The gateway speaks the OpenAI chat-completions protocol, so the official
`openai` client is used with `base_url` pointed at it. The SDK is blocking;
calls run in a worker thread.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from nutrizen.config.logging_config import redact_id
from nutrizen.config.settings import settings
from nutrizen.models.ai import (
    FoodAnalysis,
    Substitution,
    SubstitutionRequest,
    SubstitutionResult,
)
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.base import SupabaseService, first_row
from nutrizen.services.credits_service import CreditsService, get_feature_cost
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

SUBSTITUTION_FEATURE = "substitutions"
SUBSTITUTION_CACHE_DAYS = 30

PHOTO_SYSTEM_PROMPT = (
    "Tu es un expert en nutrition. Analyse les photos de plats et fournis des estimations "
    "précises des valeurs nutritionnelles. Réponds UNIQUEMENT en JSON avec les champs: "
    "calories (nombre), protein (nombre en g), carbs (nombre en g), fats (nombre en g), "
    "description (texte court)."
)
PHOTO_USER_PROMPT = "Analyse cette photo de plat et donne-moi ses valeurs nutritionnelles estimées."

SUBSTITUTION_SYSTEM_PROMPT = """Tu es un expert en nutrition et cuisine. Suggere 5 alternatives saines pour remplacer un ingredient donne.{constraints}

Reponds UNIQUEMENT en JSON valide avec ce format:
{{
  "substitutions": [
    {{"name": "Nom de l'alternative", "reason": "Pourquoi cette alternative fonctionne", "notes": "Conseils d'utilisation ou ajustements"}}
  ]
}}"""

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")
_CODE_FENCE = re.compile(r"```(?:json)?\n?")


def strip_code_fences(content: str) -> str:
    return _CODE_FENCE.sub("", content).strip()


def parse_json_answer(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a model answer as a JSON object; None when it is not one."""
    if not content:
        return None
    try:
        parsed = json.loads(strip_code_fences(content))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def constraints_text(request: SubstitutionRequest) -> str:
    c = request.constraints
    if c is None:
        return ""
    text = ""
    if c.allergies:
        text += f" Evite les allergenes: {', '.join(c.allergies)}."
    if c.diet:
        text += f" Regime: {c.diet}."
    if c.dislikes:
        text += f" A eviter: {', '.join(c.dislikes)}."
    return text


class AIService(SupabaseService):

    def __init__(
        self,
        client: Any = None,
        openai_client: Optional[OpenAI] = None,
        credits_service: Optional[CreditsService] = None,
    ) -> None:
        super().__init__(client)
        self._openai = openai_client
        self.credits_service = credits_service or CreditsService(self.client)
        self.model = settings.ai_model

    @property
    def openai_client(self) -> Optional[OpenAI]:
        if self._openai is None and settings.lovable_api_key:
            try:
                self._openai = OpenAI(api_key=settings.lovable_api_key, base_url=settings.ai_gateway_url)
            except OpenAIError as exc:
                logger.exception("Failed creating LLM gateway client: %s", exc)
        return self._openai

    async def _complete(self, messages: List[Dict[str, Any]], temperature: float) -> Optional[str]:
        client = self.openai_client
        if client is None:
            raise PublicError("AI service not configured", ErrorCode.EXTERNAL_SERVICE_ERROR, 503)

        def _fn():
            return client.chat.completions.create(model=self.model, messages=messages, temperature=temperature)

        resp = await asyncio.to_thread(_fn)
        if not resp.choices:
            return None
        return resp.choices[0].message.content

    async def analyze_food_photo(self, image: str) -> FoodAnalysis:
        """Nutrition estimate for a dish photo. Any failure yields a zeroed estimate."""
        base64_data = _DATA_URL_PREFIX.sub("", image)
        messages = [
            {"role": "system", "content": PHOTO_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": PHOTO_USER_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{base64_data}"}},
                ],
            },
        ]
        try:
            content = await self._complete(messages, temperature=0.3)
        except (OpenAIError, PublicError) as exc:
            logger.error("Food photo analysis failed: %s", exc)
            return FoodAnalysis(error="analysis_unavailable")

        parsed = parse_json_answer(content)
        if parsed is None:
            logger.warning("Unparseable food photo answer: %.200s", content)
            return FoodAnalysis(error="invalid_response")
        try:
            return FoodAnalysis.model_validate(parsed)
        except ValueError:
            return FoodAnalysis(error="invalid_response")

    async def _cached_substitutions(self, user_id: str, request: SubstitutionRequest) -> Optional[List[Any]]:
        ingredient = request.ingredient.lower()

        def _fn():
            query = (
                self.client.table("ingredient_substitutions_cache")
                .select("result, expires_at")
                .eq("user_id", user_id)
                .eq("ingredient_name", ingredient)
                .gt("expires_at", datetime.now(timezone.utc).isoformat())
            )
            if request.recipe_id:
                query = query.eq("recipe_id", str(request.recipe_id))
            else:
                query = query.is_("recipe_id", "null")
            return query.maybe_single().execute()

        res = await self._call_db(_fn)
        row = first_row(res.get("data")) if res["ok"] else None
        return row.get("result") if row else None

    async def _store_substitutions(self, user_id: str, request: SubstitutionRequest, result: List[Dict]) -> None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=SUBSTITUTION_CACHE_DAYS)

        def _fn():
            return (
                self.client.table("ingredient_substitutions_cache")
                .upsert(
                    {
                        "user_id": user_id,
                        "recipe_id": str(request.recipe_id) if request.recipe_id else None,
                        "ingredient_name": request.ingredient.lower(),
                        "constraints": request.constraints.model_dump() if request.constraints else {},
                        "result": result,
                        "expires_at": expires_at.isoformat(),
                    },
                    on_conflict="user_id,ingredient_name,recipe_id",
                )
                .execute()
            )

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.warning("Could not cache substitutions for %s: %s", redact_id(user_id), res.get("error"))

    async def suggest_substitution(self, user: AuthenticatedUser, request: SubstitutionRequest) -> SubstitutionResult:
        """
        Five healthy replacements for an ingredient. Cached answers (30 days,
        per user, ingredient and recipe) are free; fresh ones cost credits.
        """
        cached = await self._cached_substitutions(user.id, request)
        if cached is not None:
            return SubstitutionResult(
                substitutions=[Substitution.model_validate(s) for s in cached],
                cached=True,
                credits_charged=0,
            )

        if self.openai_client is None:
            raise PublicError("AI service not configured", ErrorCode.EXTERNAL_SERVICE_ERROR, 503)

        credits = await self.credits_service.check_and_consume_credits(user, SUBSTITUTION_FEATURE)
        if not credits.success:
            if credits.error_code == ErrorCode.INSUFFICIENT_CREDITS:
                raise PublicError(
                    "Insufficient credits",
                    ErrorCode.INSUFFICIENT_CREDITS,
                    402,
                    details={"current_balance": credits.current_balance, "required": credits.required},
                )
            raise PublicError("Error checking credits", ErrorCode.CREDIT_ERROR, 500)

        messages = [
            {"role": "system", "content": SUBSTITUTION_SYSTEM_PROMPT.format(constraints=constraints_text(request))},
            {"role": "user", "content": f"Suggere 5 alternatives saines pour remplacer: {request.ingredient}"},
        ]
        try:
            content = await self._complete(messages, temperature=0.7)
        except OpenAIError as exc:
            logger.error("Substitution request failed: %s", exc)
            raise PublicError("AI gateway error", ErrorCode.EXTERNAL_SERVICE_ERROR, 502) from exc

        parsed = parse_json_answer(content) or {}
        items = []
        for raw in parsed.get("substitutions") or []:
            if isinstance(raw, dict) and raw.get("name"):
                items.append(Substitution.model_validate(raw))
        if not parsed:
            logger.warning("Unparseable substitution answer: %.200s", content)

        await self._store_substitutions(user.id, request, [s.model_dump() for s in items])
        return SubstitutionResult(
            substitutions=items,
            cached=False,
            credits_charged=credits.consumed or get_feature_cost(SUBSTITUTION_FEATURE),
        )
