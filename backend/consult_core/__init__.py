from .config import ConsultSettings, bootstrap_local_env, resolve_log_level
from .cookies import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, CookieOp, SessionCookieJar
from .errors import (
    AuthProviderError,
    AuthRequiredError,
    ConsultError,
    PersistenceError,
    RateLimitError,
    RequestValidationFailed,
    UpstreamGenerationError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from .gemini import GeminiBridge, GeminiTextStream, VerificationResult
from .identity import SupabaseIdentityProvider, bearer_token
from .models import (
    AllergyCreatePayload,
    AllergyDeletePayload,
    AuthUser,
    ChatContext,
    ChatMessage,
    ChatRequest,
    ProfilePayload,
    SessionTokens,
    SignInPayload,
    TurnPlan,
)
from .persistence import PersistenceWriter
from .prompt import assemble_prompt, consultation_topic, last_user_message, truncate
from .rate_limit import SlidingWindowLimiter, check_authenticated_rate, client_ip_key
from .records import NDJSON_MEDIA_TYPE, STREAM_HEADERS, delta_record, error_record, final_record

__all__ = [
    "ACCESS_TOKEN_COOKIE",
    "NDJSON_MEDIA_TYPE",
    "REFRESH_TOKEN_COOKIE",
    "STREAM_HEADERS",
    "AllergyCreatePayload",
    "AllergyDeletePayload",
    "AuthProviderError",
    "AuthRequiredError",
    "AuthUser",
    "ChatContext",
    "ChatMessage",
    "ChatRequest",
    "ConsultError",
    "ConsultSettings",
    "CookieOp",
    "GeminiBridge",
    "GeminiTextStream",
    "PersistenceError",
    "PersistenceWriter",
    "ProfilePayload",
    "RateLimitError",
    "RequestValidationFailed",
    "SessionCookieJar",
    "SessionTokens",
    "SignInPayload",
    "SlidingWindowLimiter",
    "SupabaseIdentityProvider",
    "TurnPlan",
    "UpstreamGenerationError",
    "UpstreamTimeoutError",
    "UpstreamUnavailableError",
    "VerificationResult",
    "assemble_prompt",
    "bearer_token",
    "bootstrap_local_env",
    "check_authenticated_rate",
    "client_ip_key",
    "consultation_topic",
    "delta_record",
    "error_record",
    "final_record",
    "last_user_message",
    "resolve_log_level",
    "truncate",
]
