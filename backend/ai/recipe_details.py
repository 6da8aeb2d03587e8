import re
import json
import uuid
import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from backend.api.llm import chat_completion
from backend.api.ledger import calculate_openai_cost, with_token_consumption
from backend.api.logging_config import ExternalServiceError
from backend.api.schemas import DetailedRecipe, RecipeDetailReq, TokenConsumptionRequest

logger = logging.getLogger(__name__)

DETAIL_MODEL = "gpt-5-mini"
CACHE_VERSION = "recipe_detail_v1"
ANALYSIS_TYPE = "recipe_detail_generation"
ESTIMATED_DETAIL_TOKENS = 15
PLACEHOLDER_ID = "generate-a-unique-id"

MEAL_TYPE_CONTEXT = {
    "breakfast": "energising breakfast",
    "lunch": "balanced lunch",
    "dinner": "satisfying dinner",
    "snack": "healthy snack",
}

SYSTEM_PROMPT = "You are an expert chef. You always answer with valid JSON only."

NUMBER_PATTERN = re.compile(r"\d+(?:[.,]\d+)?")
WHOLE_NUMBER_FIELDS = ("prepTimeMin", "cookTimeMin", "servings")
TEXT_LIST_FIELDS = ("instructions", "dietaryTags", "tips", "variations")


def generate_cache_key(user_id: str, request: RecipeDetailReq) -> str:
    payload = {
        "user_id": user_id,
        "meal_title": request.meal_title,
        "main_ingredients": request.main_ingredients,
        "preferences": request.user_preferences,
        "meal_type": request.meal_type,
        "version": CACHE_VERSION,
    }
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def image_signature(title: str, ingredients: List[Dict[str, Any]]) -> str:
    """Stable hash of a dish, shared by every recipe with the same title and ingredient names"""
    names = sorted(str(i.get("name", "")) for i in ingredients)
    canonical = json.dumps({"title": title, "ingredients": ",".join(names)}, separators=(",", ":"),
                           ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_detail_prompt(request: RecipeDetailReq) -> str:
    title = request.meal_title if request.meal_title and request.meal_title != "undefined" else "Repas personnalisé"
    return f"""You are an expert chef who writes detailed, personalised recipes.

CONTEXT:
- Meal to detail: "{title}"
- Meal type: {MEAL_TYPE_CONTEXT[request.meal_type]}
- Main ingredients: {', '.join(request.main_ingredients)}
- Target calories: {request.target_calories or 'not specified'}
- User preferences: {json.dumps(request.user_preferences, ensure_ascii=False, default=str)}

Write one complete recipe for this meal, in French. Use the main ingredients, respect the
preferences and dietary restrictions, give clear step-by-step instructions, practical tips and
variations, and adapt the difficulty to the available equipment.

Answer ONLY with this JSON object:
{{
  "id": "{PLACEHOLDER_ID}",
  "title": "{title}",
  "description": "appetising description of the dish (150-200 characters)",
  "ingredients": [{{"name": "ingredient", "quantity": "quantity", "unit": "g, ml, piece..."}}],
  "instructions": ["Step 1: ...", "Step 2: ..."],
  "prepTimeMin": 15,
  "cookTimeMin": 20,
  "servings": 2,
  "nutritionalInfo": {{"kcal": 450, "protein": 25, "carbs": 35, "fat": 18, "fiber": 8}},
  "dietaryTags": ["..."],
  "difficulty": "facile | moyen | difficile",
  "tips": ["..."],
  "variations": ["..."]
}}"""


def leading_number(value: Any) -> Optional[float]:
    """First number in a model value such as 15, "15 min" or "450 kcal"; None when there is none"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = NUMBER_PATTERN.search(str(value or ""))
    return float(match.group().replace(",", ".")) if match else None


def _normalize_fields(data: Dict[str, Any]):
    for field in WHOLE_NUMBER_FIELDS:
        if field in data:
            number = leading_number(data[field])
            if number is None:
                del data[field]
            else:
                data[field] = int(round(number))

    nutrition = data.get("nutritionalInfo")
    numbers = {}
    if isinstance(nutrition, dict):
        for key, value in nutrition.items():
            number = leading_number(value)
            if number is not None:
                numbers[str(key)] = number
    data["nutritionalInfo"] = numbers

    for field in TEXT_LIST_FIELDS:
        value = data.get(field)
        if isinstance(value, str):
            data[field] = [value]
        elif isinstance(value, list):
            data[field] = [str(item) for item in value if item is not None]
        elif field in data:
            del data[field]


def parse_detailed_recipe(content: str) -> DetailedRecipe:
    text = content.strip()
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        text = text[first:last + 1]
    try:
        data = json.loads(text)
    except ValueError as e:
        logger.error(f"Failed to parse detailed recipe: {e}")
        raise ExternalServiceError("OpenAI", f"Invalid JSON response from {DETAIL_MODEL}")

    if not isinstance(data, dict):
        raise ExternalServiceError("OpenAI", f"Expected one recipe object from {DETAIL_MODEL}")

    if not data.get("id") or data.get("id") == PLACEHOLDER_ID:
        data["id"] = str(uuid.uuid4())
    data["ingredients"] = [
        {"name": str(i.get("name", "")), "quantity": str(i.get("quantity", "")), "unit": str(i.get("unit", ""))}
        for i in data.get("ingredients") or [] if isinstance(i, dict)
    ]
    _normalize_fields(data)
    data["imageSignature"] = image_signature(data.get("title", ""), data["ingredients"])
    try:
        return DetailedRecipe(**data)
    except ValueError as e:
        logger.error(f"Detailed recipe failed validation: {e}")
        raise ExternalServiceError("OpenAI", f"Unusable recipe from {DETAIL_MODEL}")


class RecipeDetailGenerator:
    """Expands a meal-plan entry into a full recipe, cached per user and input"""

    def __init__(self, db: Client):
        self.db = db

    def get_cached(self, cache_key: str) -> Optional[DetailedRecipe]:
        try:
            rows = self.db.table("ai_analysis_jobs").select("result_payload") \
                .eq("input_hash", cache_key) \
                .eq("analysis_type", ANALYSIS_TYPE) \
                .eq("status", "completed") \
                .limit(1) \
                .execute().data
        except Exception as e:
            logger.warning(f"Recipe detail cache lookup failed: {e}")
            return None
        if not rows or not rows[0].get("result_payload"):
            return None
        return DetailedRecipe(**rows[0]["result_payload"])

    def save(self, user_id: str, cache_key: str, request: RecipeDetailReq, recipe: DetailedRecipe):
        try:
            self.db.table("ai_analysis_jobs").insert({
                "user_id": user_id,
                "analysis_type": ANALYSIS_TYPE,
                "status": "completed",
                "request_payload": request.model_dump(),
                "result_payload": recipe.model_dump(),
                "input_hash": cache_key,
            }).execute()
        except Exception as e:
            logger.error(f"Failed to save recipe detail job: {e}", extra={"user_id": user_id})

    def generate(self, user_id: str, request: RecipeDetailReq,
                 request_id: Optional[str] = None) -> Tuple[DetailedRecipe, bool, float, int]:
        """Returns (recipe, cached, cost in USD, tokens debited)"""
        cache_key = generate_cache_key(user_id, request)
        cached = self.get_cached(cache_key)
        if cached is not None:
            logger.info("Using cached detailed recipe", extra={"user_id": user_id})
            return cached, True, 0.0, 0

        def run():
            content, usage = chat_completion(
                [{"role": "system", "content": SYSTEM_PROMPT},
                 {"role": "user", "content": build_detail_prompt(request)}],
                model=DETAIL_MODEL,
                max_completion_tokens=8000,
                json_mode=True,
                metadata={"user_id": user_id, "operation": ANALYSIS_TYPE},
            )
            return parse_detailed_recipe(content), usage

        def to_request(result) -> TokenConsumptionRequest:
            _, usage = result
            return TokenConsumptionRequest(
                user_id=user_id,
                edge_function_name="recipe-detail-generator",
                operation_type="recipe_detail_enrichment",
                openai_model=DETAIL_MODEL,
                openai_input_tokens=usage["input_tokens"],
                openai_output_tokens=usage["output_tokens"],
                openai_cost_usd=calculate_openai_cost(DETAIL_MODEL, usage["input_tokens"], usage["output_tokens"]),
                metadata={
                    "meal_title": request.meal_title,
                    "meal_type": request.meal_type,
                    "ingredients_count": len(request.main_ingredients),
                },
            )

        (recipe, usage), consumption = with_token_consumption(
            self.db, user_id, ESTIMATED_DETAIL_TOKENS, run, to_request, request_id
        )
        self.save(user_id, cache_key, request, recipe)
        cost = calculate_openai_cost(DETAIL_MODEL, usage["input_tokens"], usage["output_tokens"])
        return recipe, False, cost, consumption.consumed
