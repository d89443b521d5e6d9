import os
import logging
import threading
from typing import Dict, List, Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from jinja2 import Environment, FileSystemLoader
from pydantic import BaseModel, Field
from sqlmodel import Session

from . import db
from .categories import (
    COPY_MODES,
    COPY_WITH_PARENT,
    TreeNode,
    copy_branch_to_internal,
    count_descendants,
    map_category,
    map_subtree,
    suggest_mapping,
    supplier_tree,
)
from .exceptions import FeedParseError, UnsupportedFeedFormat
from .feed import pre_scan
from .importer import IMPORT_MODES, MODE_CATEGORIES_AND_PRODUCTS, ImportPipeline
from .ingest import FeedPayload, fetch_feed, from_upload
from .models import SupplierCategory
from .progress import CancelToken, ProgressEvent
from .quality import TRIGGER_MANUAL, category_average_quality, refresh_product_quality
from .store import CatalogStore

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("pim")

app = FastAPI(title="Supplier Catalog PIM")
TEMPLATES = Environment(
    loader=FileSystemLoader(os.path.join(os.path.dirname(__file__), "templates")),
    autoescape=True,
)

# One in-flight import per supplier: supplier_id -> run state
RUNS: Dict[str, dict] = {}
RUNS_LOCK = threading.Lock()


@app.on_event("startup")
def _startup():
    db.init_db()
    log.info("DB initialized.")


def get_store(session: Session = Depends(db.get_session)) -> CatalogStore:
    return CatalogStore(session)


class MappingIn(BaseModel):
    internal_category_id: Optional[int] = None


class QualityTemplateIn(BaseModel):
    required_attributes: List[str] = []
    minimum_image_count: int = Field(default=1, ge=0)
    selling_price_required: bool = True


# --- imports ---------------------------------------------------------------------

def _run_import(supplier_id: str, payload: FeedPayload, user_id: Optional[str],
                categories: List[str], mode: str, token: CancelToken) -> None:
    state = RUNS[supplier_id]

    def on_progress(event: ProgressEvent):
        state["progress"] = event.to_dict()

    try:
        with Session(db.engine) as session:
            result = ImportPipeline(CatalogStore(session)).run(
                payload.text(), supplier_id, user_id=user_id, selected_category_refs=categories,
                import_mode=mode, progress=on_progress, cancel=token, filename=payload.filename)
        state["result"] = result.to_dict()
    except Exception as e:
        log.exception("Import for supplier %s crashed", supplier_id)
        state["result"] = {"success": False, "status": "failed", "error": str(e)}
    finally:
        state["running"] = False


@app.post("/suppliers/{supplier_id}/imports", status_code=202)
async def start_import(supplier_id: str, request: Request, background: BackgroundTasks,
                       filename: str = "feed.json", user_id: Optional[str] = None,
                       mode: str = MODE_CATEGORIES_AND_PRODUCTS,
                       category: List[str] = Query(default=[])):
    if mode not in IMPORT_MODES:
        raise HTTPException(400, f"mode must be one of {', '.join(IMPORT_MODES)}")

    body = await request.body()
    try:
        payload = from_upload(body, filename) if body else await fetch_feed()
    except UnsupportedFeedFormat as e:
        raise HTTPException(415, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except httpx.HTTPError as e:
        raise HTTPException(502, f"Feed download failed: {e}")

    with RUNS_LOCK:
        state = RUNS.get(supplier_id)
        if state and state["running"]:
            return JSONResponse({"status": "already_running", "progress": state["progress"]}, status_code=409)
        token = CancelToken()
        RUNS[supplier_id] = {"running": True, "progress": None, "result": None, "token": token}

    background.add_task(_run_import, supplier_id, payload, user_id, category, mode, token)
    return {"status": "started", "supplier_id": supplier_id, "filename": payload.filename}


@app.get("/suppliers/{supplier_id}/imports/progress")
def import_progress(supplier_id: str):
    state = RUNS.get(supplier_id)
    if state is None:
        raise HTTPException(404, "No import for this supplier")
    return {k: state.get(k) for k in ("running", "progress", "result")}


@app.post("/suppliers/{supplier_id}/imports/cancel")
def cancel_import(supplier_id: str):
    state = RUNS.get(supplier_id)
    if state is None or not state["running"]:
        raise HTTPException(404, "No running import for this supplier")
    state["token"].cancel()
    return {"status": "cancelling"}


@app.post("/prescan")
async def prescan(request: Request):
    try:
        result = pre_scan(await request.body())
    except FeedParseError as e:
        raise HTTPException(400, str(e))
    return {
        "total_products": result.total_products,
        "skipped_products": result.skipped_products,
        "categories": [n.to_dict() for n in result.roots],
    }


@app.get("/imports/{import_id}")
def get_import(import_id: int, store: CatalogStore = Depends(get_store)):
    run = store.get_import_run(import_id)
    if run is None:
        raise HTTPException(404, "Import not found")
    return run


@app.get("/imports/{import_id}/diffs")
def get_import_diffs(import_id: int, external_id: Optional[str] = None, store: CatalogStore = Depends(get_store)):
    if store.get_import_run(import_id) is None:
        raise HTTPException(404, "Import not found")
    return store.list_diffs(import_id, external_id)


@app.get("/imports/{import_id}/logs")
def get_import_logs(import_id: int, store: CatalogStore = Depends(get_store)):
    if store.get_import_run(import_id) is None:
        raise HTTPException(404, "Import not found")
    return store.list_import_logs(import_id)


# --- categories --------------------------------------------------------------------

def _category_node(store: CatalogStore, node: TreeNode[SupplierCategory]) -> dict:
    cat = node.item
    return {
        "id": cat.id,
        "external_id": cat.external_id,
        "name": cat.name,
        "name_ru": cat.name_ru,
        "name_uk": cat.name_uk,
        "internal_category_id": store.internal_category_for(cat.id),
        "descendants": count_descendants(node),
        "children": [_category_node(store, c) for c in node.children],
    }


@app.get("/suppliers/{supplier_id}/categories/tree")
def category_tree(supplier_id: str, store: CatalogStore = Depends(get_store)):
    return [_category_node(store, n) for n in supplier_tree(store, supplier_id)]


@app.get("/supplier-categories/{category_id}/suggestion")
def category_suggestion(category_id: int, store: CatalogStore = Depends(get_store)):
    category = store.get_supplier_category(category_id)
    if category is None:
        raise HTTPException(404, "Category not found")
    match = suggest_mapping(store, category)
    if match is None:
        return {"suggestion": None}
    return {"suggestion": match.category, "score": match.score}


@app.put("/supplier-categories/{category_id}/mapping")
def put_mapping(category_id: int, body: MappingIn, store: CatalogStore = Depends(get_store)):
    _check_internal(store, body.internal_category_id)
    try:
        map_category(store, category_id, body.internal_category_id)
    except LookupError as e:
        raise HTTPException(404, str(e))
    store.commit()
    return {"supplier_category_id": category_id, "internal_category_id": body.internal_category_id}


@app.put("/supplier-categories/{category_id}/mapping/subtree")
def put_subtree_mapping(category_id: int, body: MappingIn, store: CatalogStore = Depends(get_store)):
    _check_internal(store, body.internal_category_id)
    try:
        count = map_subtree(store, category_id, body.internal_category_id)
    except LookupError as e:
        raise HTTPException(404, str(e))
    store.commit()
    return {"mapped": count, "internal_category_id": body.internal_category_id}


@app.post("/supplier-categories/{category_id}/copy")
def copy_category(category_id: int, mode: str = COPY_WITH_PARENT, store: CatalogStore = Depends(get_store)):
    if mode not in COPY_MODES:
        raise HTTPException(400, f"mode must be one of {', '.join(COPY_MODES)}")
    try:
        copied = copy_branch_to_internal(store, category_id, mode)
    except LookupError as e:
        raise HTTPException(404, str(e))
    store.commit()
    return {"copied": copied}


@app.put("/internal-categories/{category_id}/quality-template")
def put_quality_template(category_id: int, body: QualityTemplateIn, store: CatalogStore = Depends(get_store)):
    _check_internal(store, category_id)
    template = store.upsert_quality_template(category_id, body.required_attributes,
                                             body.minimum_image_count, body.selling_price_required)
    store.commit()
    store.refresh(template)
    return template


@app.get("/internal-categories/{category_id}/quality")
def internal_category_quality(category_id: int, store: CatalogStore = Depends(get_store)):
    _check_internal(store, category_id)
    return {"internal_category_id": category_id,
            "average_completeness": category_average_quality(store, category_id)}


def _check_internal(store: CatalogStore, internal_category_id: Optional[int]) -> None:
    if internal_category_id is not None and store.get_internal_category(internal_category_id) is None:
        raise HTTPException(404, "Internal category not found")


# --- products ------------------------------------------------------------------------

@app.get("/products/{product_id}/quality")
def product_quality(product_id: int, store: CatalogStore = Depends(get_store)):
    product = store.get_product(product_id)
    if product is None:
        raise HTTPException(404, "Product not found")
    result = refresh_product_quality(store, product, TRIGGER_MANUAL)
    store.commit()
    return {
        "product_id": product_id,
        "completeness_score": result.completeness,
        "not_ready_reasons": [r.value for r in result.reasons],
        "is_ready": result.is_ready,
        "has_selling_price": result.has_selling_price,
        "has_images": result.has_images,
        "has_category_mapping": result.has_category_mapping,
        "has_required_attributes": result.has_required_attributes,
    }


@app.get("/", response_class=HTMLResponse)
def home(supplier_id: Optional[str] = None, store: CatalogStore = Depends(get_store)):
    runs = store.list_import_runs(supplier_id)
    template = TEMPLATES.get_template("imports.html")
    return template.render(runs=runs, supplier_id=supplier_id)
