import asyncio
import os
import time
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict

import psutil
import sentry_sdk

from .database import SB
from .llm import get_openai_client, get_langfuse
from .logging_config import ExternalServiceError, DatabaseError

logger = logging.getLogger(__name__)

CHECK_TIMEOUT_S = 5.0


class HealthChecker:
    """Dependency checks for the detailed health endpoint"""

    def __init__(self):
        self.checks: Dict[str, Callable[[], Dict[str, Any]]] = {
            'database': self._check_database,
            'openai': self._check_openai,
            'langfuse': self._check_langfuse,
            'sentry': self._check_sentry,
        }

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run every check concurrently; any failing check marks the service degraded"""
        start_time = time.time()
        names = list(self.checks)
        outcomes = await asyncio.gather(*(self._run_single_check(name, self.checks[name]) for name in names))
        results = dict(zip(names, outcomes))

        return {
            'status': 'healthy' if all(r['healthy'] for r in outcomes) else 'degraded',
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'response_time_ms': int((time.time() - start_time) * 1000),
            'checks': results,
            'version': '1.0.0',
            'environment': os.environ.get('ENVIRONMENT', 'unknown'),
        }

    async def _run_single_check(self, name: str, check_func) -> Dict[str, Any]:
        start_time = time.time()
        try:
            # clients are synchronous
            result = await asyncio.wait_for(asyncio.to_thread(check_func), timeout=CHECK_TIMEOUT_S)
            return {
                'status': 'ok',
                'healthy': True,
                'response_time_ms': int((time.time() - start_time) * 1000),
                **result,
            }
        except Exception as e:
            logger.error(f"Health check failed for {name}: {e}")
            return {
                'status': 'error',
                'healthy': False,
                'error': str(e) or type(e).__name__,
                'response_time_ms': int((time.time() - start_time) * 1000),
            }

    def _check_database(self) -> Dict[str, Any]:
        if not SB.ping():
            raise DatabaseError("health_check", "user_token_balance not readable")
        return {'connection': 'ok', 'read_access': 'ok'}

    def _check_openai(self) -> Dict[str, Any]:
        if not os.environ.get("OPENAI_API_KEY"):
            return {'connection': 'disabled', 'details': 'OpenAI API key not configured'}
        try:
            get_openai_client().models.retrieve("gpt-5-mini")
        except Exception as e:
            raise ExternalServiceError("OpenAI", str(e))
        return {'connection': 'ok', 'model': 'gpt-5-mini'}

    def _check_langfuse(self) -> Dict[str, Any]:
        langfuse = get_langfuse()
        if langfuse is None:
            return {'connection': 'disabled', 'details': 'Langfuse not configured'}
        try:
            if not langfuse.auth_check():
                raise ExternalServiceError("Langfuse", "authentication failed")
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError("Langfuse", str(e))
        return {'connection': 'ok', 'host': os.environ.get("LANGFUSE_HOST", "https://cloud.langfuse.com")}

    def _check_sentry(self) -> Dict[str, Any]:
        if not os.environ.get("SENTRY_DSN"):
            return {'connection': 'disabled', 'details': 'Sentry not configured'}
        if not sentry_sdk.get_client().is_active():
            raise ExternalServiceError("Sentry", "client not initialized")
        return {'connection': 'ok', 'dsn_configured': True}


class MetricsCollector:
    """In-process counters for the metrics endpoint"""

    def __init__(self):
        self.start_time = time.time()
        self.request_count = 0
        self.error_count = 0
        self.requests_by_endpoint: Counter = Counter()
        self.tokens_consumed = 0

    def get_metrics(self) -> Dict[str, Any]:
        uptime_seconds = int(time.time() - self.start_time)
        return {
            'uptime_seconds': uptime_seconds,
            'uptime_human': self._format_uptime(uptime_seconds),
            'requests_total': self.request_count,
            'errors_total': self.error_count,
            'error_rate': self.error_count / max(self.request_count, 1),
            'requests_by_endpoint': dict(self.requests_by_endpoint),
            'tokens_consumed_total': self.tokens_consumed,
            'memory_usage': self._get_memory_usage(),
            'timestamp': datetime.utcnow().isoformat() + 'Z',
        }

    def increment_requests(self, endpoint: str = None):
        self.request_count += 1
        if endpoint:
            self.requests_by_endpoint[endpoint] += 1

    def increment_errors(self):
        self.error_count += 1

    def record_tokens(self, tokens: int):
        self.tokens_consumed += tokens

    def _format_uptime(self, seconds: int) -> str:
        days, rest = divmod(seconds, 86400)
        hours, rest = divmod(rest, 3600)
        minutes, secs = divmod(rest, 60)
        if days:
            return f"{days}d {hours}h {minutes}m {secs}s"
        if hours:
            return f"{hours}h {minutes}m {secs}s"
        if minutes:
            return f"{minutes}m {secs}s"
        return f"{secs}s"

    def _get_memory_usage(self) -> Dict[str, Any]:
        try:
            memory_info = psutil.Process().memory_info()
        except psutil.Error as e:
            return {'error': str(e)}
        return {
            'rss_bytes': memory_info.rss,
            'rss_mb': round(memory_info.rss / 1024 / 1024, 2),
            'vms_bytes': memory_info.vms,
            'vms_mb': round(memory_info.vms / 1024 / 1024, 2),
        }


health_checker = HealthChecker()
metrics_collector = MetricsCollector()
