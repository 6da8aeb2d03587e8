from .recipes import stream_cached_recipes, stream_generated_recipes, generate_cache_key, get_cached_recipes
from .recipe_details import RecipeDetailGenerator
from .goals import GoalSync
from .gamification import GamificationService

__all__ = [
    'stream_cached_recipes',
    'stream_generated_recipes',
    'generate_cache_key',
    'get_cached_recipes',
    'RecipeDetailGenerator',
    'GoalSync',
    'GamificationService',
]
