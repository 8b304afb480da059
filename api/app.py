"""
FastAPI application wiring.

create_app() assembles an app from an already-built AuthService and is
what tests use. build_auth_components() constructs every dependency from
Vault secrets for a real deployment.
"""

import logging
from dataclasses import dataclass

from dotenv import load_dotenv
from fastapi import FastAPI

from api.base import success_response
from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.mfa import MfaChallenge, TotpCodeVerifier
from auth.notifications import NotificationSink, NotificationWorker
from auth.password import CredentialHasher
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger
from auth.security_middleware import AuthMiddleware
from auth.service import AuthService
from auth.tokens import TokenIssuer
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import get_database_url, get_email_config, get_jwt_secret, get_valkey_url

logger = logging.getLogger(__name__)


@dataclass
class AuthComponents:
    """Everything built from one set of connections."""

    config: AuthConfig
    postgres: PostgresClient
    valkey: ValkeyClient
    token_issuer: TokenIssuer
    auth_service: AuthService
    notification_worker: NotificationWorker


def create_app(auth_service: AuthService, token_issuer: TokenIssuer) -> FastAPI:
    """App with auth routes under /auth, bearer auth and the standard error envelope."""
    app = FastAPI(title="Auth")

    register_error_handlers(app)

    # Added last = runs first, so request_id exists before auth runs
    app.add_middleware(AuthMiddleware, token_issuer=token_issuer)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(create_auth_router(auth_service), prefix="/auth")

    @app.get("/health")
    async def health():
        return success_response({"status": "ok"})

    return app


def build_auth_components(config: AuthConfig | None = None) -> AuthComponents:
    """Connect to Postgres, Valkey and the email gateway using Vault secrets.

    Fails fast: any missing secret or unreachable service raises here.
    """
    # Local development keeps VAULT_* variables in .env
    load_dotenv()

    config = config or AuthConfig()
    postgres = PostgresClient(get_database_url())
    valkey = ValkeyClient(get_valkey_url())

    auth_db = AuthDatabase(postgres)
    token_issuer = TokenIssuer(config, auth_db, valkey, get_jwt_secret())
    mfa_challenge = MfaChallenge(valkey, config, TotpCodeVerifier(auth_db))

    auth_service = AuthService(
        config=config,
        auth_db=auth_db,
        token_issuer=token_issuer,
        mfa_challenge=mfa_challenge,
        rate_limiter=RateLimiter(valkey),
        hasher=CredentialHasher(rounds=config.bcrypt_rounds),
        security_logger=SecurityLogger(postgres),
        notifications=NotificationSink(valkey, config.app_base_url),
        valkey=valkey,
    )

    email_config = get_email_config()
    worker = NotificationWorker(
        valkey,
        EmailGatewayClient(
            gateway_url=email_config["gateway_url"],
            api_key=email_config["api_key"],
            hmac_secret=email_config["hmac_secret"],
        ),
        app_name=config.app_name,
    )

    logger.info("Auth components initialized")
    return AuthComponents(
        config=config,
        postgres=postgres,
        valkey=valkey,
        token_issuer=token_issuer,
        auth_service=auth_service,
        notification_worker=worker,
    )


def build_app() -> FastAPI:
    """Production entry point, e.g. `uvicorn api.app:build_app --factory`."""
    components = build_auth_components()
    return create_app(components.auth_service, components.token_issuer)
