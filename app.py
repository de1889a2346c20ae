from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional
import uvicorn
import asyncio
import json
import os
import logging
import sys

from miimii.activity import ActivityLog
from miimii.config import Settings, load_settings
from miimii.context import AppContext
from miimii.data_plans import DataPlanCatalog
from miimii.database import Database
from miimii.errors import DecryptionError, InvalidInput
from miimii.events import USER_EVENTS, Verification
from miimii.flow_crypto import FlowCrypto
from miimii.flow_tokens import FlowTokenService
from miimii.flows import FlowEndpoint, check_initial_screens
from miimii.intents import FallbackClassifier, LLMClassifier, RuleBasedClassifier
from miimii.jobs import create_scheduler, setup_jobs
from miimii.notifications import NotificationEmitter
from miimii.pin import PinService
from miimii.providers.bellbank import BellBankAdapter
from miimii.providers.bilal import BilalAdapter
from miimii.providers.gateway import ProviderGateway
from miimii.provisioning import AccountProvisioner
from miimii.receipts import ReceiptService
from miimii.reconciler import Reconciler
from miimii.reports import DailyReport
from miimii.session_store import build_session_store
from miimii.state_machine import ConversationEngine
from miimii.users import UserRepository
from miimii.wallet import WalletService
from miimii.webhook import WebhookParser, parse_verification
from miimii.whatsapp_client import PlatformClient
from miimii.worker import MessageDeduplicator, TurnWorker

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        handlers=handlers,
    )


@dataclass
class Runtime:
    ctx: AppContext
    parser: WebhookParser
    crypto: FlowCrypto
    flow_endpoint: FlowEndpoint
    engine: ConversationEngine
    worker: Any
    dedupe: MessageDeduplicator
    reconciler: Reconciler
    scheduler: Any = None


def build_runtime(settings: Settings, start_jobs: bool = True) -> Runtime:
    problems = check_initial_screens()
    if problems:
        raise RuntimeError(f"Flow definitions do not match their invitations: {'; '.join(problems)}")

    db = Database(settings.database_url)
    db.init_schema()
    sessions = build_session_store(db, settings.redis_url)

    notifier = NotificationEmitter(PlatformClient(settings), db)
    users = UserRepository(db)
    wallet = WalletService(db, settings.timezone, settings.daily_limit)
    gateway = ProviderGateway(
        bank=BellBankAdapter(settings.bellbank_base_url, settings.bellbank_consumer_key,
                             settings.bellbank_consumer_secret),
        vas=BilalAdapter(settings.bilal_base_url, settings.bilal_username, settings.bilal_password),
    )
    llm = LLMClassifier(settings.openai_api_key, settings.openai_model) if settings.openai_api_key else None
    activity = ActivityLog(db)
    receipts = ReceiptService(notifier)
    plans = DataPlanCatalog(db)
    seeded = plans.seed()
    if seeded:
        logger.info(f"Seeded {seeded} data plans")

    scheduler = create_scheduler(settings.timezone)
    provisioner = AccountProvisioner(users, wallet, gateway, notifier, activity, scheduler=scheduler)

    ctx = AppContext(
        settings=settings,
        db=db,
        users=users,
        sessions=sessions,
        flow_tokens=FlowTokenService(sessions),
        wallet=wallet,
        pins=PinService(db),
        gateway=gateway,
        notifier=notifier,
        receipts=receipts,
        classifier=FallbackClassifier(llm, RuleBasedClassifier()),
        plans=plans,
        activity=activity,
        provisioner=provisioner,
    )

    engine = ConversationEngine(ctx)
    dedupe = MessageDeduplicator(db)
    reconciler = Reconciler(wallet, gateway, users, notifier, receipts, activity)
    report = DailyReport(db, notifier, settings.ops_phone, settings.timezone)
    setup_jobs(scheduler, reconciler, sessions, dedupe, report, start=start_jobs)

    return Runtime(
        ctx=ctx,
        parser=WebhookParser(settings.verify_token, settings.app_secret, settings.default_country_code),
        crypto=FlowCrypto.from_pem_files(settings.flow_private_keys, settings.flow_key_passphrase),
        flow_endpoint=FlowEndpoint(ctx),
        engine=engine,
        worker=TurnWorker(engine, notifier, settings.worker_threads, settings.turn_timeout_seconds),
        dedupe=dedupe,
        reconciler=reconciler,
        scheduler=scheduler,
    )


def accept_events(rt: Runtime, envelope: dict) -> int:
    """Queue every new event in a webhook envelope; returns how many were queued."""
    accepted = 0
    for event in rt.parser.parse(envelope):
        if isinstance(event, Verification):
            continue
        if isinstance(event, USER_EVENTS) and not rt.dedupe.first_time(event.message_id):
            logger.info(f"Ignored re-delivered message {event.message_id}")
            continue
        rt.worker.submit(event)
        accepted += 1
    return accepted


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            settings = load_settings()
            configure_logging(settings)
            app.state.runtime = build_runtime(settings)
            logger.info("MiiMii agent started")
        yield
        running = app.state.runtime
        if running.scheduler is not None and running.scheduler.running:
            running.scheduler.shutdown(wait=False)
        running.worker.shutdown(wait=False)

    app = FastAPI(title="MiiMii", lifespan=lifespan)
    app.state.runtime = runtime

    @app.get("/")
    async def home():
        return PlainTextResponse("MiiMii WhatsApp agent is running")

    @app.get("/health")
    async def health(request: Request):
        rt: Runtime = request.app.state.runtime
        database_ok = await asyncio.to_thread(rt.ctx.db.ping)
        missing = rt.ctx.settings.missing()
        breakers = rt.ctx.gateway.breakers()
        degraded = not database_ok or bool(missing) or any(b.get("state") == "open" for b in breakers.values())
        return JSONResponse({
            "status": "degraded" if degraded else "ok",
            "database": "ok" if database_ok else "unreachable",
            "session_store": rt.ctx.sessions.backend_name,
            "circuit_breakers": breakers,
            "flow_keys": rt.crypto.key_count,
            "queue_depth": rt.worker.queue_depth,
            "missing_config": missing,
        })

    @app.get("/webhook")
    async def verify_webhook(request: Request):
        rt: Runtime = request.app.state.runtime
        challenge = rt.parser.verify(parse_verification(dict(request.query_params)))
        if challenge is None:
            return PlainTextResponse("Verification failed", status_code=403)
        logger.info("Webhook verified successfully!")
        return PlainTextResponse(challenge)

    @app.post("/webhook")
    async def receive_webhook(request: Request):
        rt: Runtime = request.app.state.runtime
        body = await request.body()
        if not rt.parser.verify_signature(body, request.headers.get("X-Hub-Signature-256")):
            return JSONResponse({"error": "Invalid signature"}, status_code=401)
        try:
            envelope = json.loads(body)
        except json.JSONDecodeError:
            logger.error("Invalid JSON received")
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        # Dedupe writes and queueing touch the database; keep them off the event loop.
        accepted = await asyncio.to_thread(accept_events, rt, envelope)
        return JSONResponse({"status": "received", "events": accepted})

    @app.post("/flow")
    async def flow_endpoint(request: Request):
        rt: Runtime = request.app.state.runtime
        body = await request.body()
        if not rt.parser.verify_signature(body, request.headers.get("X-Hub-Signature-256")):
            return JSONResponse({"error": "Invalid signature"}, status_code=401)
        try:
            decrypted = rt.crypto.decrypt_request(json.loads(body))
        except (DecryptionError, json.JSONDecodeError) as e:
            # 421 makes the client re-fetch the public key and retry.
            logger.warning(f"Flow request could not be decrypted: {e}")
            return Response(status_code=421)

        try:
            payload = await asyncio.to_thread(rt.flow_endpoint.handle, decrypted.payload)
        except Exception as e:
            logger.error(f"Flow endpoint error on {decrypted.payload.get('screen')}: {e}", exc_info=True)
            payload = {"data": {"error_message": "Something went wrong. Please try again.", "has_error": True}}
        encrypted = FlowCrypto.encrypt_response(payload, decrypted.aes_key, decrypted.iv)
        return PlainTextResponse(encrypted, media_type="application/octet-stream")

    @app.post("/callbacks/vas")
    async def vas_callback(request: Request):
        rt: Runtime = request.app.state.runtime
        try:
            reference, result = rt.ctx.gateway.vas.parse_callback(await request.json())
        except (InvalidInput, ValueError) as e:
            logger.warning(f"Rejected VAS callback: {e}")
            return JSONResponse({"error": str(e)}, status_code=400)
        outcome = await asyncio.to_thread(rt.reconciler.resolve, reference, result)
        logger.info(f"VAS callback for {reference}: {outcome}")
        return JSONResponse({"status": outcome})

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
