"""
FastAPI backend for ReceiptWise.

Exposes:
- GET /                          : health/info
- POST /extract                  : extract receipt fields from a data-URI image (+ overrides)
- POST /upload                   : same, from a multipart image upload
- GET/POST /receipts             : list (filter/sort) or store a confirmed receipt
- GET /receipts/export.csv       : business expenses as CSV
- GET/PUT/DELETE /receipts/{id}  : read, fully replace or delete one receipt
- GET /budgets, PUT /budgets/{category}, GET /budgets/progress
- GET /spending/summary, GET /spending/daily
- GET /tax-report, GET /tax-report/export.csv
- POST /insights                 : AI spending insights
- POST /receipts/{id}/narration  : spoken narration of a receipt (WAV data URI)

Every user-scoped route expects the caller's identity in X-User-Id.
"""

import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from receiptwise import aggregation, persistence
from receiptwise.database import ensure_db_ready, ensure_schema, use_in_memory
from receiptwise.graph.nodes.extraction import (
	ALLOWED_MIME_TYPES,
	ExtractionError,
	ImageTooLargeError,
	InputInvalidError,
	image_bytes_to_data_url,
	max_image_bytes,
)
from receiptwise.graph.state import (
	BudgetUpdate,
	Category,
	ExtractedReceiptData,
	ExtractionOverrides,
	Receipt,
	ReceiptDraft,
)
from receiptwise.graph.workflow import run_extraction
from receiptwise.insights import InsightsError, generate_spending_insights
from receiptwise.narration import NarrationError, generate_receipt_narration

# Load .env early so USE_IN_MEMORY and other settings are available
load_dotenv(override=False)

logging.basicConfig(
	level=os.getenv("LOG_LEVEL", "INFO").upper(),
	format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".heic", ".heif"}
EXTRACT_RATE_LIMIT = os.getenv("EXTRACT_RATE_LIMIT", "30/hour")

# Rate limiter, keyed by client IP
limiter = Limiter(key_func=get_remote_address)

# FastAPI app singleton
app = FastAPI(title="ReceiptWise", version="0.1")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS: allow the Next.js frontend (dev & production)
_allowed_origins = [
	"http://localhost:3000",   # Next.js dev server
	"http://127.0.0.1:3000",
]
_prod_origin = os.getenv("FRONTEND_ORIGIN")
if _prod_origin:
	_allowed_origins.append(_prod_origin)

app.add_middleware(
	CORSMiddleware,
	allow_origins=_allowed_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request, call_next):
		response = await call_next(request)
		response.headers["X-Content-Type-Options"] = "nosniff"
		response.headers["X-Frame-Options"] = "DENY"
		response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
		response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
		return response

app.add_middleware(SecurityHeadersMiddleware)

_STORE_READY = False


def _action_result(status_code: int, message: str, error: Optional[str], data: Any = None) -> JSONResponse:
	"""The {message, data, error} envelope returned by user-initiated actions."""
	return JSONResponse(
		status_code=status_code,
		content={"message": message, "data": data, "error": error},
	)


@app.exception_handler(persistence.ReceiptNotFoundError)
async def _receipt_not_found(request: Request, exc: persistence.ReceiptNotFoundError) -> JSONResponse:
	return _action_result(404, "Receipt not found.", str(exc))


@app.exception_handler(persistence.PersistenceError)
async def _persistence_failed(request: Request, exc: persistence.PersistenceError) -> JSONResponse:
	logger.error(f"Persistence failure on {request.url.path}: {exc}")
	return _action_result(
		503,
		"Could not reach your saved data. Please try again.",
		str(exc),
	)


def _ensure_store_ready() -> None:
	global _STORE_READY
	if _STORE_READY:
		return
	if not use_in_memory():
		# Verify DB connectivity early to surface clear errors
		try:
			ensure_db_ready()
			ensure_schema()
		except Exception as e:
			raise persistence.PersistenceError(f"Document store unavailable: {e}")
	_STORE_READY = True


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
	"""Resolve the caller's identity; every record is scoped to it."""
	user_id = (x_user_id or "").strip()
	if not user_id:
		raise HTTPException(status_code=401, detail="User not authenticated.")
	_ensure_store_ready()
	return user_id


def _dump(model: BaseModel) -> Dict[str, Any]:
	# absent optional fields are omitted rather than sent as null
	return model.model_dump(mode="json", exclude_none=True)


def _current_month() -> tuple:
	today = date.today()
	return aggregation.month_range(today.year, today.month)


def _month_or_current(year: Optional[int], month: Optional[int]) -> tuple:
	if year is None and month is None:
		return _current_month()
	if year is None or month is None:
		raise HTTPException(status_code=400, detail="Provide both year and month, or neither.")
	return aggregation.month_range(year, month)


@app.get("/")
def info() -> Dict[str, Any]:
	return {
		"status": "ok",
		"version": app.version,
		"endpoints": [
			"/", "/extract", "/upload", "/receipts", "/budgets",
			"/spending/summary", "/spending/daily", "/tax-report", "/insights",
			"/receipts/{receipt_id}/narration",
		],
		"mode": "in-memory" if use_in_memory() else "postgres",
	}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractRequest(BaseModel):
	"""Payload for POST /extract."""
	photo_data_uri: str = ""
	overrides: Optional[ExtractionOverrides] = None


def _extraction_response(photo_data_uri: str, overrides: Optional[ExtractionOverrides]) -> JSONResponse:
	try:
		result: ExtractedReceiptData = run_extraction(photo_data_uri, overrides)
	except ImageTooLargeError as e:
		return _action_result(413, str(e), "Image too large.")
	except InputInvalidError as e:
		return _action_result(400, str(e), "Invalid receipt image.")
	except ExtractionError as e:
		return _action_result(
			502,
			"An error occurred while processing the receipt.",
			str(e),
		)
	return _action_result(200, "Data extracted. Please review.", None, data=_dump(result))


@app.post("/extract")
@limiter.limit(EXTRACT_RATE_LIMIT)
def extract_receipt(
	request: Request,
	body: ExtractRequest,
	user_id: str = Depends(current_user),
) -> JSONResponse:
	logger.info(f"Extraction requested by user {user_id}")
	return _extraction_response(body.photo_data_uri, body.overrides)


@app.post("/upload")
@limiter.limit(EXTRACT_RATE_LIMIT)
async def upload_receipt(
	request: Request,
	file: UploadFile = File(...),
	merchant: Optional[str] = Form(default=None),
	amount: Optional[str] = Form(default=None),
	receipt_date: Optional[str] = Form(default=None, alias="date"),
	category: Optional[str] = Form(default=None),
	description: Optional[str] = Form(default=None),
	user_id: str = Depends(current_user),
) -> JSONResponse:
	# --- Content-type guard ---
	ct = (file.content_type or "").lower()
	if ct not in ALLOWED_MIME_TYPES:
		return _action_result(
			400,
			f"Unsupported file type '{ct}'. Please upload a JPEG, PNG, or WebP image.",
			"Invalid file type.",
		)

	# --- Extension guard ---
	suffix = Path(file.filename or "").suffix.lower()
	if suffix and suffix not in ALLOWED_EXTENSIONS:
		return _action_result(400, f"Unsupported file extension '{suffix}'.", "Invalid file type.")

	try:
		content = await file.read()
	except Exception as e:
		raise HTTPException(status_code=500, detail=f"Failed to read upload: {e}")

	limit = max_image_bytes()
	if len(content) > limit:
		return _action_result(
			413,
			f"File too large ({len(content) / (1024*1024):.1f} MB). Maximum size is {limit // (1024*1024)} MB.",
			"Image too large.",
		)

	try:
		overrides = ExtractionOverrides(
			merchant=merchant,
			amount=amount,
			date=receipt_date,
			category=category,
			description=description,
		)
	except ValidationError as e:
		return _action_result(400, "Invalid override values.", str(e))

	safe_filename = Path(file.filename or "unknown").name.replace("..", "")
	logger.info(f"Upload {safe_filename} ({ct}, {len(content)} bytes) from user {user_id}")

	data_uri = image_bytes_to_data_url(content, ct)
	return await run_in_threadpool(_extraction_response, data_uri, overrides)


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

@app.get("/receipts")
def list_receipts(
	business_only: bool = False,
	category: Optional[Category] = None,
	sort: str = Query(default="date-desc"),
	user_id: str = Depends(current_user),
) -> List[Dict[str, Any]]:
	receipts = persistence.list_receipts(user_id)
	try:
		shown = aggregation.filter_receipts(receipts, business_only, category, sort)
	except ValueError as e:
		raise HTTPException(status_code=400, detail=str(e))
	return [_dump(r) for r in shown]


@app.post("/receipts", status_code=201)
def create_receipt(draft: ReceiptDraft, user_id: str = Depends(current_user)) -> Dict[str, Any]:
	return _dump(persistence.add_receipt(user_id, draft))


@app.get("/receipts/export.csv")
def export_business_receipts(user_id: str = Depends(current_user)) -> Response:
	receipts = aggregation.filter_receipts(persistence.list_receipts(user_id), business_only=True)
	if not receipts:
		raise HTTPException(status_code=404, detail="No business expenses to export.")
	filename = f"receiptwise-business-export-{date.today().isoformat()}.csv"
	return Response(
		content=aggregation.business_expenses_csv(receipts),
		media_type="text/csv; charset=utf-8",
		headers={"Content-Disposition": f'attachment; filename="{filename}"'},
	)


@app.get("/receipts/{receipt_id}")
def get_receipt(receipt_id: str, user_id: str = Depends(current_user)) -> Dict[str, Any]:
	return _dump(persistence.get_receipt(user_id, receipt_id))


@app.put("/receipts/{receipt_id}")
def replace_receipt(
	receipt_id: str,
	draft: ReceiptDraft,
	user_id: str = Depends(current_user),
) -> Dict[str, Any]:
	receipt = Receipt(id=receipt_id, **draft.model_dump())
	return _dump(persistence.update_receipt(user_id, receipt))


@app.post("/receipts/{receipt_id}/narration")
def narrate_receipt(receipt_id: str, user_id: str = Depends(current_user)) -> JSONResponse:
	receipt = persistence.get_receipt(user_id, receipt_id)
	try:
		narration_url = generate_receipt_narration(receipt)
	except NarrationError as e:
		return JSONResponse(status_code=502, content={"narration_url": None, "error": str(e)})
	return JSONResponse(content={"narration_url": narration_url, "error": None})


@app.delete("/receipts/{receipt_id}", status_code=204)
def delete_receipt(receipt_id: str, user_id: str = Depends(current_user)) -> Response:
	persistence.delete_receipt(user_id, receipt_id)
	return Response(status_code=204)


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

def _budgets_body(budgets: Dict[Category, Any]) -> Dict[str, str]:
	return {c.value: str(amount) for c, amount in budgets.items()}


@app.get("/budgets")
def get_budgets(user_id: str = Depends(current_user)) -> Dict[str, str]:
	return _budgets_body(persistence.get_budgets(user_id))


@app.put("/budgets/{category}")
def set_budget(
	category: Category,
	body: BudgetUpdate,
	user_id: str = Depends(current_user),
) -> Dict[str, str]:
	return _budgets_body(persistence.set_budget(user_id, category, body.amount))


@app.get("/budgets/progress")
def get_budget_progress(
	year: Optional[int] = None,
	month: Optional[int] = Query(default=None, ge=1, le=12),
	user_id: str = Depends(current_user),
) -> List[Dict[str, Any]]:
	start, end = _month_or_current(year, month)
	progress = aggregation.budget_progress(
		persistence.get_budgets(user_id), persistence.list_receipts(user_id), start, end
	)
	return [_dump(p) for p in progress]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@app.get("/spending/summary")
def get_spending_summary(
	start: Optional[date] = None,
	end: Optional[date] = None,
	top: int = Query(default=3, ge=0, le=len(Category)),
	user_id: str = Depends(current_user),
) -> Dict[str, Any]:
	if start is None and end is None:
		start, end = _current_month()
	elif start is None or end is None:
		raise HTTPException(status_code=400, detail="Provide both start and end, or neither.")
	if end <= start:
		raise HTTPException(status_code=400, detail="end must be after start.")
	summary = aggregation.spending_summary(persistence.list_receipts(user_id), start, end, top)
	return _dump(summary)


@app.get("/spending/daily")
def get_daily_spending(
	year: Optional[int] = None,
	month: Optional[int] = Query(default=None, ge=1, le=12),
	user_id: str = Depends(current_user),
) -> List[Dict[str, Any]]:
	start, end = _month_or_current(year, month)
	days = aggregation.daily_spending(persistence.list_receipts(user_id), start, end)
	return [_dump(d) for d in days]


@app.get("/tax-report")
def get_tax_report(
	year: Optional[int] = None,
	user_id: str = Depends(current_user),
) -> Dict[str, Any]:
	report = aggregation.tax_report(persistence.list_receipts(user_id), year or date.today().year)
	return _dump(report)


@app.get("/tax-report/export.csv")
def export_tax_report(
	year: Optional[int] = None,
	user_id: str = Depends(current_user),
) -> Response:
	year = year or date.today().year
	report = aggregation.tax_report(persistence.list_receipts(user_id), year)
	return Response(
		content=aggregation.tax_report_csv(report),
		media_type="text/csv; charset=utf-8",
		headers={"Content-Disposition": f'attachment; filename="tax-report-{year}.csv"'},
	)


@app.post("/insights")
def post_insights(user_id: str = Depends(current_user)) -> JSONResponse:
	receipts = persistence.list_receipts(user_id)
	try:
		insight = generate_spending_insights(receipts)
	except InsightsError as e:
		return JSONResponse(status_code=502, content={"insight": None, "error": str(e)})
	return JSONResponse(content={"insight": insight, "error": None})
