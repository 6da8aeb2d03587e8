from typing import List, Optional, Literal, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime


# Token ledger
class TokenCheckResult(BaseModel):
    has_enough_tokens: bool
    current_balance: int = 0
    required_tokens: int = 0
    is_subscribed: bool = False
    subscription_status: Optional[str] = None
    error: Optional[str] = None


class TokenConsumptionRequest(BaseModel):
    user_id: str
    edge_function_name: str
    operation_type: str
    openai_model: Optional[str] = None
    openai_input_tokens: Optional[int] = None
    openai_output_tokens: Optional[int] = None
    openai_cost_usd: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TokenConsumptionResult(BaseModel):
    success: bool
    remaining_balance: int = 0
    consumed: int = 0
    request_id: Optional[str] = None
    duplicate: bool = False
    needs_upgrade: bool = False
    retry_after_seconds: Optional[int] = None
    error: Optional[str] = None


class TokenBalanceResp(BaseModel):
    user_id: str
    available_tokens: int
    subscription_tokens: int = 0
    onetime_tokens: int = 0
    bonus_tokens: int = 0
    tokens_consumed_this_month: int = 0
    is_subscribed: bool = False
    subscription_status: Optional[str] = None
    plan_type: Optional[str] = None


class InitializeBalanceResp(BaseModel):
    success: bool = True
    message: str
    action_taken: Literal["none_required", "balance_created"]
    balance: Dict[str, Any]


class ResetResult(BaseModel):
    user_id: str
    email: Optional[str] = None
    plan_type: str
    tokens_allocated: int = 0
    previous_balance: int = 0
    new_balance: int = 0
    success: bool
    error: Optional[str] = None


class MonthlyResetResp(BaseModel):
    message: str
    count: int
    successful: int
    failed: int
    results: List[ResetResult]


# Transcription
class TranscriptionResp(BaseModel):
    text: str
    language: Optional[str] = None
    duration: Optional[float] = None
    tokens_consumed: int = 0
    cost_usd: float = 0.0


# Recipes
class InventoryItem(BaseModel):
    name: str
    quantity: Optional[str] = None
    category: Optional[str] = None


class UserIdentity(BaseModel):
    sex: Optional[Literal["male", "female"]] = None
    weight_kg: Optional[float] = Field(None, gt=0)
    activity_level: Optional[str] = None
    objective: Optional[str] = None


class UserPreferences(BaseModel):
    user_identity: UserIdentity = Field(default_factory=UserIdentity)
    nutrition: Dict[str, Any] = Field(default_factory=dict)
    macro_targets: Dict[str, Any] = Field(default_factory=dict)
    meal_prep_preferences: Dict[str, Any] = Field(default_factory=dict)
    kitchen_equipment: Dict[str, Any] = Field(default_factory=dict)
    food_preferences: Dict[str, Any] = Field(default_factory=dict)
    sensory_preferences: Dict[str, Any] = Field(default_factory=dict)


class RecipeFilters(BaseModel):
    max_prep_time: Optional[int] = Field(None, gt=0)
    max_cook_time: Optional[int] = Field(None, gt=0)
    servings: Optional[int] = Field(None, gt=0)


class ExistingRecipe(BaseModel):
    title: str
    main_ingredients: List[str] = Field(default_factory=list)


class GenerateRecipesReq(BaseModel):
    inventory_final: List[InventoryItem]
    user_preferences: Optional[UserPreferences] = None
    filters: Optional[RecipeFilters] = None
    existing_recipes: List[ExistingRecipe] = Field(default_factory=list)


class RecipeIngredient(BaseModel):
    name: str
    quantity: str = ""
    unit: str = ""


class RecipeDetailReq(BaseModel):
    meal_title: Optional[str] = None
    main_ingredients: List[str] = Field(default_factory=list)
    user_preferences: Dict[str, Any] = Field(default_factory=dict)
    meal_type: Literal["breakfast", "lunch", "dinner", "snack"] = "lunch"
    target_calories: Optional[int] = Field(None, gt=0)


class DetailedRecipe(BaseModel):
    id: str
    title: str
    description: str = ""
    ingredients: List[RecipeIngredient]
    instructions: List[str] = Field(default_factory=list)
    prepTimeMin: int = 0
    cookTimeMin: int = 0
    servings: int = 1
    nutritionalInfo: Dict[str, float] = Field(default_factory=dict)
    dietaryTags: List[str] = Field(default_factory=list)
    difficulty: str = "facile"
    tips: List[str] = Field(default_factory=list)
    variations: List[str] = Field(default_factory=list)
    imageSignature: Optional[str] = None


class RecipeDetailResp(BaseModel):
    recipe: DetailedRecipe
    cached: bool
    model_used: str
    cost_usd: float = 0.0
    tokens_consumed: int = 0


# Wearables
class SyncGoalsReq(BaseModel):
    activity_id: str


class GoalUpdate(BaseModel):
    goal_id: str
    goal_title: str
    goal_type: str
    previous_value: float
    value_added: float
    new_value: float
    target_value: float
    progress_percent: float
    completed: bool


class SyncGoalsResp(BaseModel):
    success: bool
    activity_id: str
    user_id: str
    goals_updated: int
    results: List[GoalUpdate]
    xp_awarded: int = 0


# Security
class CreateSessionResp(BaseModel):
    success: bool
    session_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class SessionInfo(BaseModel):
    session_token: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    expires_at: datetime


class CsrfTokenResp(BaseModel):
    csrf_token: str
    expires_in_minutes: int


# Gamification
class XpAwardResult(BaseModel):
    xp_awarded: int = 0
    base_xp: int = 0
    multiplier: float = 1.0
    streak_days: int = 0
    leveled_up: bool = False
    old_level: int = 1
    new_level: int = 1
    current_xp: int = 0
    xp_to_next_level: int = 0
    total_xp: int = 0


class ForgeActionReq(BaseModel):
    action: Literal[
        "meal_scan", "barcode_scan", "daily_recap_viewed", "trend_analysis_viewed",
        "fridge_scan", "recipe_generated", "meal_plan_generated", "shopping_list_generated",
    ]
    action_id: Optional[str] = None


class ForgeActionResp(BaseModel):
    awarded: bool
    reason: Optional[str] = None
    award: Optional[XpAwardResult] = None


class FastingXpReq(BaseModel):
    session_id: str
    duration_hours: float = Field(..., ge=0)
    target_hours: float = Field(..., gt=0)
    outcome: Literal["success", "partial", "missed"]


class FastingXpResp(BaseModel):
    xp_base: int
    award: XpAwardResult


class WeightUpdateReq(BaseModel):
    new_weight_kg: float


class WeightUpdateResp(BaseModel):
    previous_weight_kg: Optional[float] = None
    new_weight_kg: float
    weight_delta_kg: float
    milestone_reached: bool
    xp_base: int
    award: XpAwardResult


class FirstTimeBonusReq(BaseModel):
    event_type: Literal["meal_scan", "activity", "training", "body_scan", "fasting", "calorie_goal"]


class FirstTimeBonusResp(BaseModel):
    bonus_applicable: bool
    bonus_xp: int = 0
    message: Optional[str] = None


class XpStats(BaseModel):
    total_xp: int
    average_xp_per_day: int
    days: int
    top_events: List[Dict[str, Any]]
    breakdown: Dict[str, int]


class BonusRule(BaseModel):
    id: str
    rule_name: str
    description: str = ""
    period: Literal["daily", "weekly", "monthly"]
    condition_type: Literal["event_count", "xp_total", "distinct_categories"]
    event_type: Optional[str] = None
    event_category: Optional[str] = None
    threshold: int = Field(..., gt=0)
    xp_reward: int = Field(..., gt=0)
    is_active: bool = True


class BonusProgress(BaseModel):
    rule: BonusRule
    current_progress: int
    required_progress: int
    progress_percentage: float
    eligible: bool
    already_awarded: bool
    message: str


class BonusAward(BaseModel):
    id: Optional[str] = None
    user_id: str
    rule_id: str
    rule_name: Optional[str] = None
    period_start: str
    period_end: str
    xp_awarded: int
    awarded_at: Optional[datetime] = None
