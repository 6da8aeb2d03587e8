import json
import re
import time
import uuid
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from supabase import Client

from backend.api.llm import stream_chat_completion
from backend.api.ledger import calculate_openai_cost, consume_tokens_atomic
from backend.api.schemas import TokenConsumptionRequest

logger = logging.getLogger(__name__)

RECIPE_MODEL = "gpt-5-mini"
RECIPE_COUNT = 4
MAX_COMPLETION_TOKENS = 15000
ESTIMATED_RECIPE_TOKENS = 30
CACHE_VERSION = "streaming_v3"  # bump to invalidate old caches
CACHE_TTL_HOURS = 36
CACHED_REPLAY_DELAY_S = 0.2
ANALYSIS_TYPE = "recipe_generation"

ACTIVITY_MULTIPLIERS = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
    "athlete": 1.9,
}
PROTEIN_PER_KG = {
    "fat_loss": 2.2,
    "muscle_gain": 2.0,
    "recomp": 2.4,
}
OBJECTIVE_DESCRIPTIONS = {
    "fat_loss": "FAT LOSS - calorie deficit while preserving muscle",
    "muscle_gain": "MUSCLE GAIN - calorie surplus with optimised protein",
    "recomp": "BODY RECOMPOSITION - precise balance to lose fat and gain muscle",
}
EQUIPMENT_LABELS = {
    "oven": "oven",
    "stove": "stovetop",
    "microwave": "microwave",
    "airFryer": "air fryer",
    "slowCooker": "slow cooker",
    "blender": "blender",
    "foodProcessor": "food processor",
    "standMixer": "stand mixer",
    "riceCooker": "rice cooker",
    "grill": "grill",
    "steamBasket": "steam basket",
    "pressureCooker": "pressure cooker",
}
SPICE_LEVELS = ["no chili", "mild chili", "medium chili", "hot chili"]
SKILL_LEVELS = {
    "beginner": "beginner - simple recipes",
    "intermediate": "intermediate - moderate techniques",
    "advanced": "advanced - advanced techniques allowed",
}

PROTEIN_KEYWORDS = re.compile(r"poulet|thon|œuf|oeuf|fromage|yaourt|chicken|tuna|egg|cheese|yogh?urt")
GREENS_KEYWORDS = re.compile(r"légume|salade|épinard|vegetable|salad|spinach|lettuce")


def calculate_fitness_calories(identity: Dict[str, Any]) -> int:
    """Daily calorie estimate from body weight, activity level and objective"""
    weight = identity.get("weight_kg")
    if not weight:
        return 2000

    maintenance = weight * 24 * ACTIVITY_MULTIPLIERS.get(identity.get("activity_level"), 1.55)
    objective = identity.get("objective")
    if objective == "fat_loss":
        return round(maintenance * 0.8)
    if objective == "muscle_gain":
        return round(maintenance * 1.1)
    return round(maintenance)


def calculate_fitness_protein(identity: Dict[str, Any]) -> int:
    weight = identity.get("weight_kg")
    if not weight:
        return 120
    return round(weight * PROTEIN_PER_KG.get(identity.get("objective"), 1.8))


def get_objective_description(objective: Optional[str]) -> str:
    return OBJECTIVE_DESCRIPTIONS.get(objective, "MAINTENANCE - optimal nutritional balance")


def generate_cache_key(inventory: List[Dict[str, Any]],
                       preferences: Optional[Dict[str, Any]],
                       filters: Optional[Dict[str, Any]],
                       user_id: str,
                       existing_recipes: Optional[List[Dict[str, Any]]] = None) -> str:
    """SHA-256 over the inputs that change what the model would return"""
    preferences = preferences or {}
    payload = {
        "inventory": [{"name": item.get("name"), "quantity": item.get("quantity")} for item in inventory or []],
        "fitness_preferences": {
            "nutrition": preferences.get("nutrition") or {},
            "macro_targets": preferences.get("macro_targets") or {},
            "user_identity": preferences.get("user_identity") or {},
            "meal_prep_preferences": preferences.get("meal_prep_preferences") or {},
            "kitchen_equipment": preferences.get("kitchen_equipment") or {},
            "food_preferences": preferences.get("food_preferences") or {},
            "sensory_preferences": preferences.get("sensory_preferences") or {},
        },
        "filters": filters,
        "userId": user_id,
        "existing_recipes": existing_recipes or [],
        "version": CACHE_VERSION,
    }
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _named(prefs: List[Dict[str, Any]], state: str) -> List[str]:
    return [p.get("name") for p in prefs or [] if p.get("state") == state and p.get("name")]


def build_recipe_prompt(inventory: List[Dict[str, Any]],
                        preferences: Optional[Dict[str, Any]],
                        filters: Optional[Dict[str, Any]],
                        existing_recipes: Optional[List[Dict[str, Any]]] = None) -> str:
    preferences = preferences or {}
    filters = filters or {}
    nutrition = preferences.get("nutrition") or {}
    meal_prep = preferences.get("meal_prep_preferences") or {}
    equipment = preferences.get("kitchen_equipment") or {}
    food = preferences.get("food_preferences") or {}
    sensory = preferences.get("sensory_preferences") or {}
    macros = preferences.get("macro_targets") or {}
    identity = preferences.get("user_identity") or {}

    ingredients = ", ".join(f"{item['name']} ({item.get('quantity') or '1'})" for item in inventory)

    dietary = []
    if nutrition.get("diet"):
        dietary.append(f"Diet: {nutrition['diet']}")
    else:
        dietary.append("Omnivore by default - all recipe types allowed")
    if nutrition.get("allergies"):
        dietary.append(f"CRITICAL ALLERGIES: {', '.join(nutrition['allergies'])} - MUST BE AVOIDED")
    elif "allergies" not in nutrition:
        dietary.append("No known allergies")
    if nutrition.get("intolerances"):
        dietary.append(f"Intolerances: {', '.join(nutrition['intolerances'])} - avoid when possible")

    food_constraints = []
    for label, state in (("Liked ingredients", "like"), ("Disliked ingredients", "dislike"),
                         ("BANNED ingredients (never use)", "ban")):
        names = _named(food.get("ingredients"), state)
        if names:
            food_constraints.append(f"{label}: {', '.join(names)}")
    for label, state in (("Preferred cuisines", "like"), ("Cuisines to avoid", "dislike")):
        names = _named(food.get("cuisines"), state)
        if names:
            food_constraints.append(f"{label}: {', '.join(names)}")

    sensory_constraints = []
    tolerance = sensory.get("spiceTolerance")
    if isinstance(tolerance, int) and 0 <= tolerance < len(SPICE_LEVELS):
        sensory_constraints.append(f"Spice tolerance: {SPICE_LEVELS[tolerance]} at most")
    if sensory.get("textureAversions"):
        sensory_constraints.append(f"Textures to avoid: {', '.join(sensory['textureAversions'])}")

    available = [EQUIPMENT_LABELS.get(key, key) for key, ok in equipment.items() if ok is True]
    equipment_text = ", ".join(available) if available else "basic equipment (oven, stovetop)"

    time_constraints = []
    if meal_prep.get("weekdayTimeMin"):
        time_constraints.append(f"Weekday time: {meal_prep['weekdayTimeMin']} min max")
    if meal_prep.get("weekendTimeMin"):
        time_constraints.append(f"Weekend time: {meal_prep['weekendTimeMin']} min max")
    skill = meal_prep.get("cookingSkill")
    if skill:
        time_constraints.append(f"Cooking level: {SKILL_LEVELS.get(skill, 'intermediate')}")

    macro_guidance = []
    if macros.get("kcal"):
        macro_guidance.append(f"Target calories: ~{macros['kcal']} kcal/day")
    elif identity.get("weight_kg") and identity.get("objective"):
        macro_guidance.append(f"Estimated calories: ~{calculate_fitness_calories(identity)} kcal/day")
    if macros.get("fiberMinG"):
        macro_guidance.append(f"Fibre minimum: {macros['fiberMinG']}g")
    if macros.get("sugarMaxG"):
        macro_guidance.append(f"Sugar maximum: {macros['sugarMaxG']}g")
    if nutrition.get("proteinTarget_g"):
        macro_guidance.append(f"Target protein: {nutrition['proteinTarget_g']}g/day")
    elif identity.get("weight_kg") and identity.get("objective"):
        macro_guidance.append(f"Estimated protein: ~{calculate_fitness_protein(identity)}g/day")

    lines = [
        "You are an expert chef specialised in sports nutrition and fitness goals.",
        "",
        "STRICT RESPONSE RULES:",
        "- Reply ONLY with valid JSON: an array of recipe objects, no markdown, no commentary",
        "- Write all recipe text in French",
        "",
        "AVAILABLE INGREDIENTS:",
        ingredients,
        "",
    ]

    if existing_recipes:
        lines.append("ALREADY GENERATED RECIPES (avoid repeating their dish types, main ingredients and methods):")
        for index, recipe in enumerate(existing_recipes, start=1):
            main = ", ".join(recipe.get("main_ingredients") or []) or "unspecified"
            lines.append(f"{index}. \"{recipe.get('title')}\" - main ingredients: {main}")
        lines.append("")

    lines.append("CONSTRAINTS:")
    lines.append(f"- Available equipment: {equipment_text}")
    for label, items in (("DIETARY RESTRICTIONS", dietary), ("FOOD PREFERENCES", food_constraints),
                         ("SENSORY CONSTRAINTS", sensory_constraints), ("TIME CONSTRAINTS", time_constraints),
                         ("NUTRITION TARGETS", macro_guidance)):
        if items:
            lines.append(f"- {label}: {' | '.join(items)}")
    lines.append("- PORTIONS: recipes for one person")
    if filters.get("max_prep_time"):
        lines.append(f"- Max prep time: {filters['max_prep_time']} minutes")
    if filters.get("max_cook_time"):
        lines.append(f"- Max cook time: {filters['max_cook_time']} minutes")
    if filters.get("servings"):
        lines.append(f"- Minimum servings: {filters['servings']}")

    if identity.get("sex"):
        lines.append(f"- Sex: {identity['sex']}")
    if identity.get("activity_level"):
        lines.append(f"- Activity level: {identity['activity_level']}")
    if identity.get("objective"):
        lines.append(f"- FITNESS OBJECTIVE: {get_objective_description(identity['objective'])} (TOP PRIORITY)")
    if identity.get("weight_kg"):
        lines.append(f"- Weight: {identity['weight_kg']}kg")

    lines += [
        "",
        f"Generate EXACTLY {RECIPE_COUNT} distinct recipes optimised for the objective, respecting allergies,",
        f"the user's cooking level ({skill or 'intermediate'}), equipment and time. Explain in \"reasons\" how",
        "each recipe supports the objective. Ignore water and packaging in the inventory.",
        "",
        "Format:",
        '[{"title": "...", "description": "...", "ingredients": [{"name": "...", "quantity": "...", "unit": "..."}],',
        ' "instructions": ["..."], "prep_time_min": 15, "cook_time_min": 30, "servings": 1,',
        ' "dietary_tags": ["..."], "nutritional_info": {"calories": 450, "protein": 35, "carbs": 25,',
        ' "fat": 20, "fiber": 8}, "image_signature": "...", "reasons": ["..."]}]',
    ]
    return "\n".join(lines)


def _is_recipe_like(value: Any) -> bool:
    return isinstance(value, dict) and bool(value.get("title")) and isinstance(value.get("ingredients"), list)


def extract_complete_recipes(buffer: str) -> Tuple[List[Dict[str, Any]], str]:
    """
    Pull every complete recipe object out of a partial JSON stream.

    Objects are recognised as soon as their closing brace arrives, whether or
    not the surrounding array has closed. Returns (recipes, unconsumed buffer).
    """
    recipes: List[Dict[str, Any]] = []
    if not buffer:
        return recipes, buffer

    start = re.search(r"[\[{]", buffer)
    if start is None:
        return recipes, buffer
    buffer = buffer[start.start():]

    i = 0
    in_string = False
    escape_next = False
    depth = 0
    obj_start = -1
    array_started = False

    while i < len(buffer):
        ch = buffer[i]

        if escape_next:
            escape_next = False
            i += 1
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
        elif ch == "[" and depth == 0 and not array_started:
            array_started = True
        elif ch == "{":
            if depth == 0:
                obj_start = i
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0 and obj_start != -1:
                try:
                    parsed = json.loads(buffer[obj_start:i + 1])
                except ValueError:
                    parsed = None
                if _is_recipe_like(parsed):
                    if not parsed.get("id"):
                        parsed["id"] = str(uuid.uuid4())
                    recipes.append(parsed)

                    j = i + 1
                    while j < len(buffer) and buffer[j].isspace():
                        j += 1
                    if array_started and j < len(buffer) and buffer[j] == ",":
                        j += 1
                        while j < len(buffer) and buffer[j].isspace():
                            j += 1

                    buffer = buffer[j:]
                    i = 0
                    obj_start = -1
                    continue
        i += 1

    return recipes, buffer


def parse_recipes_from_buffer(buffer: str) -> List[Dict[str, Any]]:
    """Whole-response parse used when incremental extraction found nothing"""
    cleaned = re.sub(r"```(?:json)?", "", buffer or "")
    start = cleaned.find("[")
    end = cleaned.rfind("]")
    if start == -1 or end <= start:
        return []
    try:
        recipes = json.loads(cleaned[start:end + 1])
    except ValueError as e:
        logger.warning(f"Failed to parse recipes from buffer: {e}")
        return []
    if not isinstance(recipes, list):
        return []
    return [r for r in recipes if _is_recipe_like(r)]


def generate_fitness_fallback_recipes(inventory: List[Dict[str, Any]],
                                      preferences: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Static recipes picked by objective and inventory when the model returns nothing usable"""
    identity = (preferences or {}).get("user_identity") or {}
    objective = identity.get("objective") or "recomp"
    names = [(item.get("name") or "").lower() for item in inventory]
    fat_loss = objective == "fat_loss"
    muscle_gain = objective == "muscle_gain"

    recipes = []
    if any(PROTEIN_KEYWORDS.search(name) for name in names):
        recipes.append({
            "title": "Bowl protéiné post-entraînement",
            "description": "Recette riche en protéines pour la récupération musculaire",
            "ingredients": [
                {"name": "Protéine disponible", "quantity": "150", "unit": "g"},
                {"name": "Légumes colorés", "quantity": "200", "unit": "g"},
                {"name": "Glucides complexes", "quantity": "80", "unit": "g"},
                {"name": "Huile d'olive", "quantity": "1", "unit": "cuillère à soupe"},
            ],
            "instructions": [
                "Préparez la source de protéines (grillée, pochée ou cuite)",
                "Cuisez les légumes à la vapeur ou sautés",
                "Préparez les glucides complexes (riz, quinoa, patate douce)",
                "Assemblez dans un bowl et assaisonnez avec l'huile d'olive",
            ],
            "prep_time_min": 15,
            "cook_time_min": 20,
            "servings": 1,
            "dietary_tags": ["riche en protéines", "post-entraînement", "équilibré"],
            "nutritional_info": {
                "calories": 380 if fat_loss else 520 if muscle_gain else 450,
                "protein": 35,
                "carbs": 25 if fat_loss else 40,
                "fat": 12 if fat_loss else 18,
                "fiber": 8,
            },
            "image_signature": "high protein fitness bowl post workout",
            "reasons": [f"Adapté à votre objectif : {get_objective_description(objective)}"],
        })

    if fat_loss and any(GREENS_KEYWORDS.search(name) for name in names):
        recipes.append({
            "title": "Salade haute satiété",
            "description": "Faible en glucides, riche en fibres et protéines pour un déficit calorique",
            "ingredients": [
                {"name": "Légumes verts", "quantity": "300", "unit": "g"},
                {"name": "Protéine maigre", "quantity": "120", "unit": "g"},
                {"name": "Avocat", "quantity": "50", "unit": "g"},
                {"name": "Graines", "quantity": "15", "unit": "g"},
            ],
            "instructions": [
                "Préparez une base généreuse de légumes verts",
                "Ajoutez la protéine maigre",
                "Incorporez l'avocat et parsemez de graines",
                "Assaisonnez avec vinaigre et épices",
            ],
            "prep_time_min": 10,
            "cook_time_min": 5,
            "servings": 1,
            "dietary_tags": ["faible en glucides", "haute satiété"],
            "nutritional_info": {"calories": 320, "protein": 28, "carbs": 12, "fat": 18, "fiber": 12},
            "image_signature": "low carb high protein salad fat loss",
            "reasons": ["Déficit calorique contrôlé", "Riche en fibres pour la satiété"],
        })

    if muscle_gain:
        recipes.append({
            "title": "Power bowl prise de masse",
            "description": "Dense en calories et protéines pour la croissance musculaire",
            "ingredients": [
                {"name": "Protéine complète", "quantity": "180", "unit": "g"},
                {"name": "Glucides complexes", "quantity": "120", "unit": "g"},
                {"name": "Légumes nutritifs", "quantity": "150", "unit": "g"},
                {"name": "Lipides sains", "quantity": "30", "unit": "g"},
            ],
            "instructions": [
                "Préparez une portion généreuse de protéines",
                "Cuisez les glucides complexes",
                "Ajoutez les légumes et les lipides de qualité",
                "Assemblez le bowl",
            ],
            "prep_time_min": 20,
            "cook_time_min": 25,
            "servings": 1,
            "dietary_tags": ["prise de masse", "riche en calories"],
            "nutritional_info": {"calories": 650, "protein": 40, "carbs": 55, "fat": 25, "fiber": 8},
            "image_signature": "high calorie muscle building power bowl",
            "reasons": ["Surplus calorique contrôlé", "Protéines élevées pour la synthèse musculaire"],
        })

    if not recipes:
        recipes.append({
            "title": "Repas équilibré fitness",
            "description": "Recette équilibrée adaptée à vos objectifs de composition corporelle",
            "ingredients": [
                {"name": "Protéine de qualité", "quantity": "150", "unit": "g"},
                {"name": "Légumes de saison", "quantity": "200", "unit": "g"},
                {"name": "Glucides adaptés", "quantity": "100", "unit": "g"},
                {"name": "Lipides essentiels", "quantity": "15", "unit": "g"},
            ],
            "instructions": [
                "Sélectionnez une protéine parmi vos ingrédients",
                "Préparez les légumes en préservant leurs nutriments",
                "Ajoutez des glucides selon votre objectif",
                "Équilibrez les portions selon vos besoins caloriques",
            ],
            "prep_time_min": 15,
            "cook_time_min": 20,
            "servings": 1,
            "dietary_tags": ["équilibré", "fitness"],
            "nutritional_info": {
                "calories": 400 if fat_loss else 550 if muscle_gain else 475,
                "protein": 30,
                "carbs": 30 if fat_loss else 45,
                "fat": 15 if fat_loss else 20,
                "fiber": 8,
            },
            "image_signature": "balanced fitness meal",
            "reasons": [f"Adapté à votre objectif : {get_objective_description(objective)}"],
        })

    for recipe in recipes:
        recipe["id"] = str(uuid.uuid4())
    return recipes


def sse_event(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


def get_cached_recipes(db: Client, user_id: str, cache_key: str) -> Optional[List[Dict[str, Any]]]:
    """Recipes cached for this key within the TTL, else None. Lookup failures count as a miss."""
    cutoff = (datetime.utcnow() - timedelta(hours=CACHE_TTL_HOURS)).isoformat()
    try:
        result = db.table("ai_analysis_jobs").select("result_payload") \
            .eq("user_id", user_id) \
            .eq("input_hash", cache_key) \
            .eq("analysis_type", ANALYSIS_TYPE) \
            .eq("status", "completed") \
            .gte("created_at", cutoff) \
            .order("created_at", desc=True) \
            .limit(1) \
            .execute()
    except Exception as e:
        logger.warning(f"Recipe cache lookup failed: {e}", extra={"user_id": user_id})
        return None

    if not result.data:
        return None
    recipes = (result.data[0].get("result_payload") or {}).get("recipes")
    return recipes or None


def save_recipe_cache(db: Client, user_id: str, cache_key: str, recipes: List[Dict[str, Any]],
                      completion: Dict[str, Any], request_summary: Dict[str, Any]):
    now = datetime.utcnow().isoformat()
    try:
        db.table("ai_analysis_jobs").upsert({
            "user_id": user_id,
            "analysis_type": ANALYSIS_TYPE,
            "status": "completed",
            "input_hash": cache_key,
            "request_payload": request_summary,
            "result_payload": {"recipes": recipes, **completion},
            "created_at": now,
            "updated_at": now,
        }, on_conflict="input_hash,analysis_type").execute()
    except Exception as e:
        logger.error(f"Failed to cache generated recipes: {e}", extra={"user_id": user_id})


def stream_cached_recipes(recipes: List[Dict[str, Any]], started_at: float,
                          delay: float = CACHED_REPLAY_DELAY_S) -> Iterator[str]:
    """Replay cached recipes as SSE; free of charge"""
    yield sse_event("skeleton", {"recipe_count": len(recipes), "count": len(recipes)})
    for index, recipe in enumerate(recipes):
        if not recipe.get("id"):
            recipe["id"] = str(uuid.uuid4())
        if index > 0 and delay:
            time.sleep(delay)
        yield sse_event("recipe", recipe)
    yield sse_event("complete", {
        "recipes_count": len(recipes),
        "processing_time_ms": int((time.time() - started_at) * 1000),
        "cost_usd": 0,
        "input_tokens": 0,
        "output_tokens": 0,
        "model_used": "cached",
        "cache_hit": True,
    })


def stream_generated_recipes(db: Client,
                             user_id: str,
                             cache_key: str,
                             inventory: List[Dict[str, Any]],
                             preferences: Optional[Dict[str, Any]],
                             filters: Optional[Dict[str, Any]],
                             existing_recipes: Optional[List[Dict[str, Any]]],
                             started_at: float,
                             request_id: Optional[str] = None) -> Iterator[str]:
    """
    Stream freshly generated recipes as SSE events.

    Emits `skeleton`, one `recipe` per recipe as soon as it is parsed, then
    `complete`. Any failure ends the stream with an `error` event. Caching and
    billing happen after `complete` and never interrupt the stream.
    """
    prompt = build_recipe_prompt(inventory, preferences, filters, existing_recipes)
    recipes: List[Dict[str, Any]] = []
    usage = {"input_tokens": 0, "output_tokens": 0}
    used_fallback = False

    try:
        yield sse_event("skeleton", {"recipe_count": RECIPE_COUNT, "count": RECIPE_COUNT})

        buffer = ""
        for kind, value in stream_chat_completion(
            [{"role": "user", "content": prompt}],
            model=RECIPE_MODEL,
            max_completion_tokens=MAX_COMPLETION_TOKENS,
            metadata={"user_id": user_id, "operation": ANALYSIS_TYPE},
        ):
            if kind == "usage":
                usage = value
                continue
            buffer += value
            found, buffer = extract_complete_recipes(buffer)
            for recipe in found:
                recipes.append(recipe)
                logger.info(f"Streaming recipe {len(recipes)}: {recipe.get('title')}", extra={"user_id": user_id})
                yield sse_event("recipe", recipe)

        if not recipes:
            logger.info("No streamed recipes found, parsing full buffer", extra={"user_id": user_id})
            for recipe in parse_recipes_from_buffer(buffer):
                recipe["id"] = str(uuid.uuid4())
                recipes.append(recipe)
                yield sse_event("recipe", recipe)

        if not recipes:
            logger.warning("Using fitness fallback recipes", extra={"user_id": user_id})
            used_fallback = True
            for recipe in generate_fitness_fallback_recipes(inventory, preferences):
                recipes.append(recipe)
                yield sse_event("recipe", recipe)

        cost_usd = calculate_openai_cost(RECIPE_MODEL, usage["input_tokens"], usage["output_tokens"])
        completion = {
            "recipes_count": len(recipes),
            "processing_time_ms": int((time.time() - started_at) * 1000),
            "cost_usd": cost_usd,
            "input_tokens": usage["input_tokens"],
            "output_tokens": usage["output_tokens"],
            "model_used": RECIPE_MODEL,
        }
        yield sse_event("complete", completion)
    except Exception as e:
        logger.error(f"Recipe streaming failed: {e}", extra={"user_id": user_id}, exc_info=True)
        yield sse_event("error", {"error": str(e)})
        return

    if not used_fallback:
        save_recipe_cache(db, user_id, cache_key, recipes, completion, {
            "inventory_count": len(inventory),
            "has_preferences": bool(preferences),
            "has_filters": bool(filters),
            "model_used": RECIPE_MODEL,
            "input_tokens": usage["input_tokens"],
            "output_tokens": usage["output_tokens"],
            "fitness_focused": True,
        })

    if usage["input_tokens"] + usage["output_tokens"] == 0:
        logger.warning("No model usage reported, recipe generation not billed", extra={"user_id": user_id})
        return

    consumption = consume_tokens_atomic(db, TokenConsumptionRequest(
        user_id=user_id,
        edge_function_name="recipe-generator",
        operation_type=ANALYSIS_TYPE,
        openai_model=RECIPE_MODEL,
        openai_input_tokens=usage["input_tokens"],
        openai_output_tokens=usage["output_tokens"],
        openai_cost_usd=cost_usd,
        metadata={
            "recipes_count": len(recipes),
            "processing_time_ms": completion["processing_time_ms"],
            "has_preferences": bool(preferences),
            "has_filters": bool(filters),
        },
    ), request_id)
    if not consumption.success:
        logger.error(f"Token consumption failed: {consumption.error}",
                     extra={"user_id": user_id, "request_id": consumption.request_id})
