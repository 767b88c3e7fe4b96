import logging
from decimal import Decimal
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.orm import Session

from auth import AuthError, AuthEvent, AuthService, AuthSession, NotAuthenticatedError
from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import export_expenses, parse_amount
from database import get_db
from models import EXPENSE_CATEGORIES
from schemas import ExpenseIn, ExpenseOut, ExpenseUpdate
from services import (
    NOT_FOUND,
    ExpenseRepository,
    category_shares,
    expense_stats,
    summarize_by_category,
)
from store import RemoteError, SQLExpenseStore

BASE_DIR = Path(__file__).resolve().parent
SESSION_COOKIE = "expenses_session"

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Tracker")
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")

CHART_COLORS = [
    "#10b981",
    "#3b82f6",
    "#f59e0b",
    "#ef4444",
    "#8b5cf6",
    "#ec4899",
    "#14b8a6",
    "#f97316",
    "#6366f1",
    "#84cc16",
]


def format_currency(amount: Decimal) -> str:
    return f"${Decimal(amount):,.2f}"


templates.env.filters["currency"] = format_currency
templates.env.globals["csrf_token"] = generate_csrf_token
templates.env.globals["categories"] = EXPENSE_CATEGORIES


def _log_auth_event(event: AuthEvent, auth_session: Optional[AuthSession]) -> None:
    user = auth_session.user.id if auth_session else None
    logger.debug(f"auth_state: event={event.value} user={user}")


def get_auth(request: Request, db: Session = Depends(get_db)) -> AuthService:
    auth = AuthService(db, token=request.cookies.get(SESSION_COOKIE))
    auth.on_auth_state_change(_log_auth_event)
    return auth


def get_repository(
    auth: AuthService = Depends(get_auth), db: Session = Depends(get_db)
) -> ExpenseRepository:
    identity = auth.current_user()
    store = SQLExpenseStore(db, identity.id if identity else None)
    return ExpenseRepository(store, identity)


def require_repository(
    repo: ExpenseRepository = Depends(get_repository),
) -> ExpenseRepository:
    if repo.identity is None:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return repo


def error_message(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid value")
        return f"{field}: {message}" if field else message
    if isinstance(exc, (RemoteError, AuthError)):
        return exc.message
    return str(exc)


def remote_http_error(exc: RemoteError) -> HTTPException:
    status = 404 if exc.message == NOT_FOUND else 502
    return HTTPException(status_code=status, detail=exc.message)


def render(
    request: Request,
    template: str,
    context: dict[str, object],
    status_code: int = 200,
) -> HTMLResponse:
    return templates.TemplateResponse(
        request, template, context, status_code=status_code
    )


def render_dashboard(
    request: Request,
    repo: ExpenseRepository,
    *,
    error: Optional[str] = None,
    status_code: int = 200,
) -> HTMLResponse:
    try:
        expenses = repo.list_all()
    except RemoteError as exc:
        logger.warning(f"dashboard_load_failed: message={exc.message}")
        expenses = []
        error = error or exc.message
    summary = summarize_by_category(expenses)
    shares = category_shares(summary)
    tab = request.query_params.get("tab", "expenses")
    return render(
        request,
        "dashboard.html",
        {
            "user": repo.identity,
            "expenses": expenses,
            "stats": expense_stats(expenses),
            "shares": [
                (share, CHART_COLORS[idx % len(CHART_COLORS)])
                for idx, share in enumerate(shares)
            ],
            "tab": "analytics" if tab == "analytics" else "expenses",
            "error": error,
        },
        status_code=status_code,
    )


def with_session_cookie(response: Response, auth_session: AuthSession) -> Response:
    response.set_cookie(
        SESSION_COOKIE,
        auth_session.token,
        max_age=settings.session_max_age_hours * 3600,
        httponly=True,
        samesite="lax",
    )
    return response


def to_dashboard() -> RedirectResponse:
    return RedirectResponse(url="/", status_code=303)


def to_login() -> RedirectResponse:
    return RedirectResponse(url="/login", status_code=303)


@app.get("/", response_class=HTMLResponse)
def dashboard(request: Request, repo: ExpenseRepository = Depends(get_repository)):
    if repo.identity is None:
        return to_login()
    return render_dashboard(request, repo)


@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request, auth: AuthService = Depends(get_auth)):
    if auth.current_user() is not None:
        return to_dashboard()
    return render(request, "login.html", {"error": None, "email": ""})


@app.post("/login")
async def login(request: Request, auth: AuthService = Depends(get_auth)):
    form = await request.form()
    email = str(form.get("email", ""))
    if not validate_csrf_token(str(form.get("csrf_token", ""))):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        auth_session = auth.sign_in(email, str(form.get("password", "")))
    except (AuthError, ValueError) as exc:
        return render(
            request,
            "login.html",
            {"error": error_message(exc), "email": email},
            status_code=400,
        )
    return with_session_cookie(to_dashboard(), auth_session)


@app.get("/signup", response_class=HTMLResponse)
def signup_page(request: Request, auth: AuthService = Depends(get_auth)):
    if auth.current_user() is not None:
        return to_dashboard()
    return render(
        request, "signup.html", {"error": None, "email": "", "full_name": ""}
    )


@app.post("/signup")
async def signup(request: Request, auth: AuthService = Depends(get_auth)):
    form = await request.form()
    email = str(form.get("email", ""))
    full_name = str(form.get("full_name", ""))
    if not validate_csrf_token(str(form.get("csrf_token", ""))):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        auth_session = auth.sign_up(email, str(form.get("password", "")), full_name)
    except (AuthError, ValueError) as exc:
        return render(
            request,
            "signup.html",
            {"error": error_message(exc), "email": email, "full_name": full_name},
            status_code=400,
        )
    return with_session_cookie(to_dashboard(), auth_session)


@app.post("/logout")
async def logout(request: Request, auth: AuthService = Depends(get_auth)):
    form = await request.form()
    user = auth.current_user()
    if not validate_csrf_token(
        str(form.get("csrf_token", "")), user.id if user else None
    ):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    auth.sign_out()
    response = to_login()
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.post("/expenses")
async def create_expense(
    request: Request, repo: ExpenseRepository = Depends(get_repository)
):
    form = await request.form()
    if repo.identity is None:
        return to_login()
    if not validate_csrf_token(str(form.get("csrf_token", "")), repo.identity.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        data = ExpenseIn(
            category=str(form.get("category", "")),
            amount=parse_amount(str(form.get("amount", ""))),
            comments=str(form.get("comments", "")),
        )
        repo.create(data)
    except NotAuthenticatedError:
        return to_login()
    except (ValueError, RemoteError) as exc:
        return render_dashboard(
            request, repo, error=error_message(exc), status_code=400
        )
    return to_dashboard()


@app.post("/expenses/{expense_id}")
async def update_expense(
    expense_id: str,
    request: Request,
    repo: ExpenseRepository = Depends(get_repository),
):
    form = await request.form()
    if repo.identity is None:
        return to_login()
    if not validate_csrf_token(str(form.get("csrf_token", "")), repo.identity.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        data = ExpenseUpdate(
            category=str(form.get("category", "")),
            amount=parse_amount(str(form.get("amount", ""))),
            comments=str(form.get("comments", "")),
        )
        repo.update(expense_id, data)
    except (ValueError, RemoteError) as exc:
        return render_dashboard(
            request, repo, error=error_message(exc), status_code=400
        )
    return to_dashboard()


@app.post("/expenses/{expense_id}/delete")
async def delete_expense(
    expense_id: str,
    request: Request,
    repo: ExpenseRepository = Depends(get_repository),
):
    form = await request.form()
    if repo.identity is None:
        return to_login()
    if not validate_csrf_token(str(form.get("csrf_token", "")), repo.identity.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        repo.delete(expense_id)
    except RemoteError as exc:
        return render_dashboard(
            request, repo, error=error_message(exc), status_code=400
        )
    return to_dashboard()


@app.get("/expenses/export.csv")
def export_expenses_endpoint(repo: ExpenseRepository = Depends(require_repository)):
    try:
        expenses = repo.list_all()
    except RemoteError as exc:
        raise remote_http_error(exc) from exc
    return Response(
        content=export_expenses(expenses),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="expenses.csv"'},
    )


@app.get("/api/expenses")
def api_list_expenses(
    limit: Optional[int] = None,
    offset: int = 0,
    repo: ExpenseRepository = Depends(require_repository),
):
    try:
        if limit is None:
            expenses = repo.list_all()
        else:
            expenses = repo.list_page(limit, offset)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RemoteError as exc:
        raise remote_http_error(exc) from exc
    return [ExpenseOut.model_validate(expense) for expense in expenses]


@app.post("/api/expenses", status_code=201)
def api_create_expense(
    data: ExpenseIn, repo: ExpenseRepository = Depends(require_repository)
):
    try:
        expense = repo.create(data)
    except NotAuthenticatedError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except RemoteError as exc:
        raise remote_http_error(exc) from exc
    return ExpenseOut.model_validate(expense)


@app.patch("/api/expenses/{expense_id}")
def api_update_expense(
    expense_id: str,
    data: ExpenseUpdate,
    repo: ExpenseRepository = Depends(require_repository),
):
    try:
        expense = repo.update(expense_id, data)
    except RemoteError as exc:
        raise remote_http_error(exc) from exc
    return ExpenseOut.model_validate(expense)


@app.delete("/api/expenses/{expense_id}", status_code=204)
def api_delete_expense(
    expense_id: str, repo: ExpenseRepository = Depends(require_repository)
):
    try:
        repo.delete(expense_id)
    except RemoteError as exc:
        raise remote_http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/summary")
def api_category_summary(repo: ExpenseRepository = Depends(require_repository)):
    try:
        summary = repo.category_summary()
    except RemoteError as exc:
        raise remote_http_error(exc) from exc
    return category_shares(summary)


@app.get("/api/stats")
def api_stats(repo: ExpenseRepository = Depends(require_repository)):
    try:
        return repo.stats()
    except RemoteError as exc:
        raise remote_http_error(exc) from exc
