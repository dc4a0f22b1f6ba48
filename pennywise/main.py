from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from pennywise.accounts import (
    create_account,
    get_account_with_transactions,
    list_accounts,
    set_default_account,
)
from pennywise.budget_alerts import check_budget_alerts, get_current_budget, set_budget
from pennywise.db import create_db_engine, init_db
from pennywise.errors import (
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    PennywiseError,
    ValidationError,
)
from pennywise.identity import CurrentUser, get_current_user, sync_user
from pennywise.ledger import (
    apply_create,
    apply_delete,
    apply_update,
    get_transaction,
    list_transactions,
    reseed,
)
from pennywise.logging_config import configure_logging
from pennywise.notifications import LogSender, NotificationSender, SmtpSender
from pennywise.receipts import Err, GeminiClient, GenerativeClient, ScanErrorKind, scan_receipt
from pennywise.reports import send_monthly_reports
from pennywise.scheduler import IntervalTrigger, WorkQueue, run_recurring_cycle, schedule_default_jobs
from pennywise.schemas import (
    AccountDetailResponse,
    AccountPayload,
    AccountResponse,
    BudgetPayload,
    BudgetResponse,
    BulkDeletePayload,
    BulkDeleteResponse,
    CurrentBudgetResponse,
    DashboardResponse,
    JobResponse,
    ReceiptScanResponse,
    ReseedPayload,
    ReseedResponse,
    TransactionPayload,
    TransactionResponse,
    UserResponse,
    UserSyncPayload,
)
from pennywise.seed import generate_seed_transactions
from pennywise.settings import Settings

MAX_RECEIPT_BYTES = 5 * 1024 * 1024

logger = structlog.get_logger(__name__)
router = APIRouter()


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def current_user(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CurrentUser:
    return get_current_user(request.app.state.engine, x_user_id)


def require_cron_secret(
    request: Request, x_cron_secret: str | None = Header(None, alias="x-cron-secret")
) -> None:
    expected = request.app.state.settings.cron_secret
    if expected and x_cron_secret != expected:
        raise AuthorizationError("Invalid cron secret.")


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/users/sync", response_model=UserResponse)
def sync_current_user(payload: UserSyncPayload, engine: Engine = Depends(get_engine)) -> UserResponse:
    return UserResponse(**sync_user(engine, payload))


@router.get("/accounts", response_model=list[AccountResponse])
def get_accounts(
    user: CurrentUser = Depends(current_user), engine: Engine = Depends(get_engine)
) -> list[AccountResponse]:
    return [AccountResponse(**row) for row in list_accounts(engine, user.id)]


@router.post("/accounts", response_model=AccountResponse)
def post_account(
    payload: AccountPayload,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> AccountResponse:
    return AccountResponse(**create_account(engine, user.id, payload))


@router.get("/accounts/{account_id}", response_model=AccountDetailResponse)
def get_account(
    account_id: int,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> AccountDetailResponse:
    return AccountDetailResponse(**get_account_with_transactions(engine, user.id, account_id))


@router.put("/accounts/{account_id}/default", response_model=AccountResponse)
def put_default_account(
    account_id: int,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> AccountResponse:
    return AccountResponse(**set_default_account(engine, user.id, account_id))


@router.get("/transactions", response_model=list[TransactionResponse])
def get_transactions(
    account_id: int | None = Query(None),
    type: str | None = Query(None),
    category: str | None = Query(None),
    is_recurring: bool | None = Query(None),
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> list[TransactionResponse]:
    rows = list_transactions(
        engine,
        user.id,
        account_id=account_id,
        txn_type=type,
        category=category,
        is_recurring=is_recurring,
    )
    return [TransactionResponse(**row) for row in rows]


@router.post("/transactions", response_model=TransactionResponse)
def post_transaction(
    payload: TransactionPayload,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> TransactionResponse:
    return TransactionResponse(**apply_create(engine, user.id, payload))


@router.post("/transactions/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete_transactions(
    payload: BulkDeletePayload,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> BulkDeleteResponse:
    changes = apply_delete(engine, user.id, payload.transaction_ids)
    return BulkDeleteResponse(
        deleted_count=len(set(payload.transaction_ids)),
        balance_changes=changes,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_one_transaction(
    transaction_id: int,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> TransactionResponse:
    return TransactionResponse(**get_transaction(engine, user.id, transaction_id))


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def put_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> TransactionResponse:
    return TransactionResponse(**apply_update(engine, user.id, transaction_id, payload))


@router.get("/budget", response_model=CurrentBudgetResponse)
def get_budget(
    account_id: int = Query(...),
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> CurrentBudgetResponse:
    budget, expenses = get_current_budget(engine, user.id, account_id)
    return CurrentBudgetResponse(
        budget=BudgetResponse(**budget) if budget else None,
        current_expenses=expenses,
    )


@router.put("/budget", response_model=BudgetResponse)
def put_budget(
    payload: BudgetPayload,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> BudgetResponse:
    return BudgetResponse(**set_budget(engine, user.id, payload.amount))


@router.post("/receipts/scan", response_model=ReceiptScanResponse)
def post_receipt_scan(
    request: Request,
    file: UploadFile = File(...),
    user: CurrentUser = Depends(current_user),
) -> ReceiptScanResponse:
    client: GenerativeClient | None = request.app.state.receipt_client
    if client is None:
        raise ExternalServiceError("Receipt scanning is not configured.")
    contents = file.file.read(MAX_RECEIPT_BYTES + 1)
    if len(contents) > MAX_RECEIPT_BYTES:
        raise ValidationError("File size should be less than 5MB.")
    result = scan_receipt(client, contents, file.content_type or "application/octet-stream")
    if isinstance(result, Err):
        if result.kind == ScanErrorKind.UNREACHABLE:
            raise ExternalServiceError("Receipt scanning service unavailable.")
        if result.kind == ScanErrorKind.NOT_A_RECEIPT:
            raise ValidationError("The upload does not look like a receipt.")
        raise ExternalServiceError("Receipt scanning returned an unreadable response.")
    receipt = result.value
    return ReceiptScanResponse(
        amount=receipt.amount,
        date=receipt.date,
        description=receipt.description,
        merchant_name=receipt.merchant_name,
        category=receipt.category,
    )


@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    user: CurrentUser = Depends(current_user), engine: Engine = Depends(get_engine)
) -> DashboardResponse:
    return DashboardResponse(
        accounts=[AccountResponse(**row) for row in list_accounts(engine, user.id)],
        transactions=[TransactionResponse(**row) for row in list_transactions(engine, user.id)],
    )


@router.post("/admin/accounts/{account_id}/reseed", response_model=ReseedResponse)
def post_reseed(
    account_id: int,
    payload: ReseedPayload,
    user: CurrentUser = Depends(current_user),
    engine: Engine = Depends(get_engine),
) -> ReseedResponse:
    if not any(row["id"] == account_id for row in list_accounts(engine, user.id)):
        raise NotFoundError("Account not found.")
    items = payload.transactions
    if items is None:
        items = generate_seed_transactions()
    balance = reseed(engine, account_id, items)
    return ReseedResponse(account_id=account_id, inserted_count=len(items), balance=balance)


@router.post("/jobs/recurring", response_model=JobResponse, dependencies=[Depends(require_cron_secret)])
def run_recurring_job(request: Request) -> JobResponse:
    report = run_recurring_cycle(request.app.state.engine, request.app.state.work_queue)
    return JobResponse(job="recurring-transactions", processed=report.processed, failed=report.abandoned)


@router.post("/jobs/budget-alerts", response_model=JobResponse, dependencies=[Depends(require_cron_secret)])
def run_budget_alert_job(request: Request) -> JobResponse:
    state = request.app.state
    alerts = check_budget_alerts(
        state.engine, state.sender, threshold=state.settings.budget_alert_threshold
    )
    return JobResponse(job="budget-alerts", processed=len(alerts))


@router.post("/jobs/monthly-reports", response_model=JobResponse, dependencies=[Depends(require_cron_secret)])
def run_monthly_report_job(request: Request) -> JobResponse:
    state = request.app.state
    delivered = send_monthly_reports(state.engine, state.sender, state.receipt_client)
    return JobResponse(job="monthly-reports", processed=delivered)


async def handle_pennywise_error(request: Request, exc: PennywiseError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc), kind=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def build_sender(settings: Settings) -> NotificationSender:
    if settings.smtp_host:
        return SmtpSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            mail_from=settings.mail_from,
        )
    return LogSender()


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    sender: NotificationSender | None = None,
    receipt_client: GenerativeClient | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    engine = engine or create_db_engine(settings.database_url)
    if receipt_client is None and settings.gemini_api_key:
        receipt_client = GeminiClient(api_key=settings.gemini_api_key, model=settings.gemini_model)
    work_queue = WorkQueue()
    sender = sender or build_sender(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        trigger = None
        if settings.enable_scheduler:
            trigger = IntervalTrigger()
            schedule_default_jobs(
                trigger,
                engine,
                work_queue,
                sender,
                receipt_client,
                recurring_period=settings.recurring_interval_seconds,
                threshold=settings.budget_alert_threshold,
            )
            trigger.start()
            logger.info("scheduler_started")
        try:
            yield
        finally:
            if trigger is not None:
                trigger.stop()

    app = FastAPI(title="Pennywise", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.sender = sender
    app.state.receipt_client = receipt_client
    app.state.work_queue = work_queue
    app.add_exception_handler(PennywiseError, handle_pennywise_error)
    app.include_router(router)
    return app


app = create_app()
