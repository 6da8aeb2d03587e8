from fastapi import FastAPI, HTTPException, Depends, Header, Request, Response, UploadFile, File, Form, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.routing import Match
from typing import Optional, List, Literal
import os
import hmac
import sentry_sdk
from supabase import Client
from datetime import datetime
import uuid
from dotenv import load_dotenv
import pathlib
import time
from contextlib import asynccontextmanager

from .logging_config import (
    setup_logging, log_error, log_api_call, to_http_exception,
    AppError, ValidationError, NotFoundError, DatabaseError
)
from .validation import (
    sanitize_text, validate_uuid, validate_weight, validate_audio_upload,
    validate_language, validate_inventory, validate_existing_recipes, validate_fasting_duration
)
from .health import health_checker, metrics_collector
from .rate_limiter import check_rate_limit
from .database import SB, get_db
from .ledger import (
    calculate_whisper_cost, convert_usd_to_tokens, with_token_consumption, require_tokens,
    get_token_balance, get_subscription, initialize_token_balance
)
from .security import SecurityLogger, SessionManager, CSRFProtection
from .whisper import transcribe_audio, WHISPER_MODEL
from .schemas import (
    TokenConsumptionRequest, TokenBalanceResp, InitializeBalanceResp, MonthlyResetResp,
    TranscriptionResp, GenerateRecipesReq, RecipeDetailReq, RecipeDetailResp,
    SyncGoalsReq, SyncGoalsResp, CreateSessionResp, SessionInfo, CsrfTokenResp,
    ForgeActionReq, ForgeActionResp, FastingXpReq, FastingXpResp, WeightUpdateReq, WeightUpdateResp,
    FirstTimeBonusReq, FirstTimeBonusResp, XpStats, BonusProgress, BonusAward
)

env_path = pathlib.Path(__file__).parent.parent.parent / '.env'
load_dotenv(dotenv_path=env_path)

from backend.ai import (
    stream_cached_recipes, stream_generated_recipes, generate_cache_key, get_cached_recipes,
    RecipeDetailGenerator, GoalSync, GamificationService
)
from backend.ai.recipes import ESTIMATED_RECIPE_TOKENS
from backend.ai.gamification import XP_VALUES
from backend.jobs.monthly_reset import reset_monthly_tokens

logger = setup_logging()

sentry_sdk.init(dsn=os.environ.get("SENTRY_DSN"), traces_sample_rate=0.2)

# 1 MB of compressed speech is roughly one minute
ESTIMATED_AUDIO_MINUTES_PER_MB = 1.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    if SB.ping():
        logger.info("[lifespan] Supabase connection warm OK")
    else:
        logger.error("[lifespan] Supabase warmup failed")
    yield
    SB.dispose()


app = FastAPI(title="TwinForge API", version="1.0.0", lifespan=lifespan)


def route_label(request: Request) -> str:
    """Method plus route template, so path parameters never reach logs or metrics"""
    partial = None
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return f"{request.method} {route.path}"
        if match == Match.PARTIAL and partial is None:
            partial = route.path
    return f"{request.method} {partial or 'unmatched'}"


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    endpoint = route_label(request)

    logger.info(
        f"Request started: {endpoint}",
        extra={"request_id": request_id, "endpoint": endpoint}
    )

    try:
        response = await call_next(request)
    except Exception as e:
        metrics_collector.increment_errors()
        log_error(logger, e, {
            "request_id": request_id,
            "endpoint": endpoint,
            "execution_time": (time.time() - start_time) * 1000
        })
        raise

    metrics_collector.increment_requests(endpoint)
    if response.status_code >= 400:
        metrics_collector.increment_errors()

    log_api_call(
        logger=logger,
        endpoint=endpoint,
        execution_time=(time.time() - start_time) * 1000,
        status_code=response.status_code,
        request_id=request_id
    )
    response.headers["X-Request-ID"] = request_id
    return response


ALLOWED_ORIGINS = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",
]
if os.environ.get("ALLOWED_ORIGIN"):
    ALLOWED_ORIGINS.append(os.environ["ALLOWED_ORIGIN"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "Idempotency-Key", "X-CSRF-Token", "X-Request-ID"],
)


async def get_current_user(request: Request, authorization: str = Header(None), db: Client = Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    token = authorization.split(" ", 1)[1]
    try:
        user = db.auth.get_user(token).user
    except Exception as e:
        logger.warning(f"Authentication error: {e}")
        user = None

    if user is None:
        SecurityLogger(db).log_unauthorized_access(route_label(request), request)
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def require_service_key(authorization: str = Header(None), x_cron_secret: str = Header(None)):
    """Scheduled jobs authenticate with the service role key or the cron secret"""
    service_key = os.environ.get("SUPABASE_KEY", "")
    cron_secret = os.environ.get("CRON_SECRET", "")

    bearer = authorization.split(" ", 1)[1] if authorization and authorization.startswith("Bearer ") else ""
    if service_key and bearer and hmac.compare_digest(bearer, service_key):
        return
    if cron_secret and x_cron_secret and hmac.compare_digest(x_cron_secret, cron_secret):
        return
    raise HTTPException(status_code=401, detail={"error": "AUTHENTICATION_ERROR", "message": "Service key required"})


def request_id_for(idempotency_key: Optional[str]) -> Optional[str]:
    """Client Idempotency-Key when given, so retries of one request are charged once"""
    if idempotency_key:
        return sanitize_text(idempotency_key, 128)
    return None


# Transcription

@app.post("/transcribe/audio", response_model=TranscriptionResp)
async def transcribe(request: Request,
                     audio: UploadFile = File(...),
                     language: str = Form("fr"),
                     idempotency_key: Optional[str] = Header(None),
                     user=Depends(get_current_user),
                     db: Client = Depends(get_db)):
    """Whisper transcription, billed on the duration Whisper reports"""
    check_rate_limit(request, user.id, 'transcribe', SecurityLogger(db))

    try:
        audio_bytes = await audio.read()
        validate_audio_upload(len(audio_bytes), audio.content_type)
        language = validate_language(language)

        estimated_minutes = max(1.0, len(audio_bytes) / (1024 * 1024) * ESTIMATED_AUDIO_MINUTES_PER_MB)
        estimated_tokens = convert_usd_to_tokens(calculate_whisper_cost(estimated_minutes * 60))

        logger.info(
            f"Transcribing audio for user {user.id}",
            extra={"user_id": user.id, "audio_size": len(audio_bytes), "estimated_tokens": estimated_tokens}
        )

        def build_request(result) -> TokenConsumptionRequest:
            duration = result.get("duration") or estimated_minutes * 60
            return TokenConsumptionRequest(
                user_id=user.id,
                edge_function_name="audio-transcribe",
                operation_type="audio_transcription",
                openai_model=WHISPER_MODEL,
                openai_cost_usd=calculate_whisper_cost(duration),
                metadata={
                    "audioSize": len(audio_bytes),
                    "duration": duration,
                    "textLength": len(result.get("text") or ""),
                    "language": result.get("language"),
                },
            )

        result, consumption = with_token_consumption(
            db, user.id, estimated_tokens,
            lambda: transcribe_audio(audio_bytes, audio.filename or "audio.webm", audio.content_type, language, user.id),
            build_request,
            request_id_for(idempotency_key),
        )
        metrics_collector.record_tokens(consumption.consumed)

        return TranscriptionResp(
            text=result["text"],
            language=result.get("language"),
            duration=result.get("duration"),
            tokens_consumed=consumption.consumed,
            cost_usd=calculate_whisper_cost(result.get("duration") or estimated_minutes * 60),
        )

    except ValidationError as e:
        SecurityLogger(db).log_validation_error("audio-transcribe", e.message, request, user.id)
        raise to_http_exception(e)
    except AppError as e:
        raise to_http_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to transcribe audio")


# Recipes

@app.post("/recipes/generate")
async def generate_recipes(req: GenerateRecipesReq,
                           request: Request,
                           idempotency_key: Optional[str] = Header(None),
                           user=Depends(get_current_user),
                           db: Client = Depends(get_db)):
    """Streams recipes as server-sent events; cached results replay free of charge"""
    check_rate_limit(request, user.id, 'recipes', SecurityLogger(db))
    started_at = time.time()

    try:
        inventory = validate_inventory([item.model_dump() for item in req.inventory_final])
        existing = validate_existing_recipes([r.model_dump() for r in req.existing_recipes])
        preferences = req.user_preferences.model_dump() if req.user_preferences else None
        filters = req.filters.model_dump(exclude_none=True) if req.filters else None

        cache_key = generate_cache_key(inventory, preferences, filters, user.id, existing)
        cached = get_cached_recipes(db, user.id, cache_key)
        if cached:
            logger.info(f"Serving {len(cached)} cached recipes", extra={"user_id": user.id})
            stream = stream_cached_recipes(cached, started_at)
        else:
            require_tokens(db, user.id, ESTIMATED_RECIPE_TOKENS)
            stream = stream_generated_recipes(
                db, user.id, cache_key, inventory, preferences, filters, existing, started_at,
                request_id_for(idempotency_key),
            )
    except AppError as e:
        raise to_http_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to generate recipes")

    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@app.post("/recipes/detail", response_model=RecipeDetailResp)
async def recipe_detail(req: RecipeDetailReq,
                        request: Request,
                        idempotency_key: Optional[str] = Header(None),
                        user=Depends(get_current_user),
                        db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'recipe_detail', SecurityLogger(db))

    try:
        if req.meal_title:
            req.meal_title = sanitize_text(req.meal_title, 200)
        req.main_ingredients = [sanitize_text(i, 200) for i in req.main_ingredients]

        recipe, cached, cost_usd, tokens = RecipeDetailGenerator(db).generate(
            user.id, req, request_id_for(idempotency_key)
        )
        metrics_collector.record_tokens(tokens)
        return RecipeDetailResp(
            recipe=recipe,
            cached=cached,
            model_used="gpt-5-mini",
            cost_usd=cost_usd,
            tokens_consumed=tokens,
        )
    except AppError as e:
        raise to_http_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id, "meal_title": req.meal_title})
        raise HTTPException(status_code=500, detail="Failed to generate recipe detail")


# Tokens

@app.post("/tokens/initialize", response_model=InitializeBalanceResp)
async def initialize_tokens(request: Request, response: Response,
                            user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'tokens')

    try:
        balance, created = initialize_token_balance(db, user.id)
    except AppError as e:
        raise to_http_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to initialize token balance")

    if created:
        response.status_code = 201
        return InitializeBalanceResp(message="Token balance initialized with welcome bonus",
                                     action_taken="balance_created", balance=balance)
    return InitializeBalanceResp(message="Token balance already exists",
                                 action_taken="none_required", balance=balance)


@app.get("/tokens/balance", response_model=TokenBalanceResp)
async def token_balance(request: Request, user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'tokens')

    try:
        balance = get_token_balance(db, user.id)
        if balance is None:
            raise NotFoundError("Token balance")
        subscription = get_subscription(db, user.id) or {}
    except AppError as e:
        raise to_http_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id})
        raise HTTPException(status_code=500, detail="Failed to fetch token balance")

    return TokenBalanceResp(
        user_id=user.id,
        available_tokens=balance.get("available_tokens") or 0,
        subscription_tokens=balance.get("subscription_tokens") or 0,
        onetime_tokens=balance.get("onetime_tokens") or 0,
        bonus_tokens=balance.get("bonus_tokens") or 0,
        tokens_consumed_this_month=balance.get("tokens_consumed_this_month") or 0,
        is_subscribed=subscription.get("status") == "active",
        subscription_status=subscription.get("status"),
        plan_type=subscription.get("plan_type"),
    )


@app.post("/tokens/reset-monthly", response_model=MonthlyResetResp, dependencies=[Depends(require_service_key)])
async def reset_monthly(request: Request, db: Client = Depends(get_db)):
    check_rate_limit(request, None, 'admin')

    try:
        return reset_monthly_tokens(db)
    except AppError as e:
        raise to_http_exception(e)
    except Exception as e:
        log_error(logger, e, {"endpoint": "reset-monthly"})
        raise HTTPException(status_code=500, detail="Monthly token reset failed")


# Wearables

@app.post("/wearables/sync-goals", response_model=SyncGoalsResp)
async def sync_goals(req: SyncGoalsReq, request: Request,
                     user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')

    try:
        activity_id = validate_uuid(req.activity_id, "activity_id")
        results = GoalSync(db).sync(user.id, activity_id)
    except AppError as e:
        raise to_http_exception(e)
    except Exception as e:
        log_error(logger, e, {"user_id": user.id, "activity_id": req.activity_id})
        raise HTTPException(status_code=500, detail="Failed to sync goals")

    xp_awarded = 0
    try:
        award = GamificationService(db).award_xp(user.id, "wearable_sync", "wearable", XP_VALUES["wearable_sync"],
                                                 {"activity_id": activity_id, "goals_updated": len(results)})
        xp_awarded = award.xp_awarded
    except AppError as e:
        logger.error(f"Wearable sync XP not awarded: {e.message}", extra={"user_id": user.id})

    return SyncGoalsResp(
        success=True,
        activity_id=activity_id,
        user_id=user.id,
        goals_updated=len(results),
        results=results,
        xp_awarded=xp_awarded,
    )


# Security

def _require_csrf(db: Client, user_id: str, token: Optional[str], request: Request, edge_function: str):
    check = CSRFProtection(db).validate_request(user_id, token, request, edge_function)
    if not check["valid"]:
        raise HTTPException(status_code=403, detail={"error": "CSRF_VALIDATION_FAILED", "message": check.get("error")})


@app.post("/security/sessions", response_model=CreateSessionResp)
async def create_session(request: Request, user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'sessions')

    result = SessionManager(db).create_session(user.id, request)
    if not result["success"]:
        return JSONResponse(status_code=409, content={"success": False, "error": result["error"]})
    SecurityLogger(db).log_for_request(request, "session_created", "low", "security", user.id, {})
    return CreateSessionResp(**result)


@app.get("/security/sessions", response_model=List[SessionInfo])
async def list_sessions(request: Request, user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'sessions')
    return SessionManager(db).get_user_sessions(user.id)


@app.delete("/security/sessions/{session_token}")
async def terminate_session(session_token: str, request: Request,
                            x_csrf_token: Optional[str] = Header(None),
                            user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'sessions')
    _require_csrf(db, user.id, x_csrf_token, request, "security")

    sessions = SessionManager(db)
    check = sessions.validate_session(session_token)
    if not check["valid"] or check.get("user_id") != user.id:
        raise to_http_exception(NotFoundError("Session"))

    if not sessions.terminate_session(session_token):
        raise to_http_exception(DatabaseError("terminate_session", "Failed to terminate session"))
    SecurityLogger(db).log_for_request(request, "session_terminated", "low", "security", user.id, {})
    return {"success": True}


@app.delete("/security/sessions")
async def terminate_all_sessions(request: Request,
                                 x_csrf_token: Optional[str] = Header(None),
                                 user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'sessions')
    _require_csrf(db, user.id, x_csrf_token, request, "security")

    if not SessionManager(db).terminate_all_user_sessions(user.id):
        raise to_http_exception(DatabaseError("terminate_sessions", "Failed to terminate sessions"))
    SecurityLogger(db).log_for_request(request, "session_terminated", "medium", "security", user.id, {"all": True})
    return {"success": True}


@app.post("/security/csrf-token", response_model=CsrfTokenResp)
async def csrf_token(request: Request, user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'sessions')

    protection = CSRFProtection(db)
    token = protection.generate_token(user.id)
    if not token:
        raise to_http_exception(DatabaseError("generate_csrf_token", "Failed to generate CSRF token"))
    return CsrfTokenResp(csrf_token=token, expires_in_minutes=protection.token_validity_minutes)


# Gamification

@app.get("/gamification/progress")
async def gamification_progress(request: Request, user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')

    try:
        progress = GamificationService(db).get_progress(user.id)
        if progress is None:
            raise NotFoundError("Gamification progress")
        return progress
    except AppError as e:
        raise to_http_exception(e)


@app.get("/gamification/xp-stats", response_model=XpStats)
async def xp_stats(request: Request, days: int = Query(30, ge=1, le=365),
                   user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')

    try:
        return GamificationService(db).get_xp_stats(user.id, days)
    except AppError as e:
        raise to_http_exception(e)


@app.get("/gamification/bonuses", response_model=List[BonusProgress])
async def bonuses(request: Request, period: Optional[Literal["daily", "weekly", "monthly"]] = None,
                  user=Depends(get_current_user), db: Client = Depends(get_db)):
    """Progress toward each active bonus rule; rules met this period are awarded on the way"""
    check_rate_limit(request, user.id, 'gamification')

    try:
        return GamificationService(db).evaluate_bonuses(user.id, period)
    except AppError as e:
        raise to_http_exception(e)


@app.get("/gamification/bonuses/history", response_model=List[BonusAward])
async def bonus_history(request: Request, limit: int = Query(10, ge=1, le=100),
                        user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')

    try:
        return GamificationService(db).get_bonus_history(user.id, limit)
    except AppError as e:
        raise to_http_exception(e)


@app.post("/gamification/forge-action", response_model=ForgeActionResp)
async def forge_action(req: ForgeActionReq, request: Request,
                       user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')

    try:
        return GamificationService(db).award_forge_action(user.id, req.action, req.action_id)
    except AppError as e:
        raise to_http_exception(e)


@app.post("/gamification/fasting", response_model=FastingXpResp)
async def fasting_xp(req: FastingXpReq, request: Request,
                     user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')

    try:
        duration, target = validate_fasting_duration(req.duration_hours, req.target_hours)
        xp_base, award = GamificationService(db).award_fasting_xp(
            user.id, req.session_id, duration, target, req.outcome
        )
        return FastingXpResp(xp_base=xp_base, award=award)
    except AppError as e:
        raise to_http_exception(e)


@app.post("/gamification/weight", response_model=WeightUpdateResp)
async def weight_update(req: WeightUpdateReq, request: Request,
                        user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')

    try:
        weight = validate_weight(req.new_weight_kg)
        return GamificationService(db).update_weight(user.id, weight)
    except AppError as e:
        raise to_http_exception(e)


@app.post("/gamification/first-time-bonus", response_model=FirstTimeBonusResp)
async def first_time_bonus(req: FirstTimeBonusReq, request: Request,
                           user=Depends(get_current_user), db: Client = Depends(get_db)):
    check_rate_limit(request, user.id, 'gamification')
    return GamificationService(db).claim_first_time_bonus(user.id, req.event_type)


# Health

@app.get("/health")
async def health():
    ok = SB.ping()
    body = {
        "status": "healthy" if ok else "unhealthy",
        "database": "connected" if ok else "disconnected",
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }
    if not ok:
        return JSONResponse(status_code=503, content=body)
    return body


@app.get("/health/quick")
async def health_quick():
    """Quick health check for load balancer"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "uptime": metrics_collector.get_metrics()["uptime_human"]
    }


@app.get("/health/detailed")
async def health_detailed():
    result = await health_checker.run_all_checks()
    if result["status"] != "healthy":
        return JSONResponse(status_code=503, content=result)
    return result


@app.get("/metrics")
async def metrics():
    return metrics_collector.get_metrics()
