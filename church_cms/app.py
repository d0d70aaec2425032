from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import datetime
import math
import os
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import col, func, or_, select
from starlette.datastructures import UploadFile

from .auth import Identity, JWTManager, Role, has_role, optional_auth, require_roles
from .config import Settings, configure_logging, load_settings
from .constants import (
    BLOG_UPLOAD_FOLDER,
    DEFAULT_UPLOAD_FOLDER,
    MINISTRY_UPLOAD_FOLDER,
    UPLOADS_URL_PREFIX,
    slugify,
)
from .db import Database, init_db
from .db_helpers import get_live, session_scope
from .errors import ChurchCMSError, UploadError, ValidationError
from .models import Blog, Ministry, Sermon
from .uploads import (
    ProcessedFile,
    delete_uploaded_file,
    get_file_from_url,
    handle_upload,
    upload_dependency,
)
from .validation import (
    BLOG_RULES,
    BLOG_UPDATE_RULES,
    LIKE_RULES,
    MINISTRY_RULES,
    SERMON_LIST_RULES,
    SERMON_RULES,
    SHARE_RULES,
    ValidationResult,
    is_uuid,
    validated_body,
    validated_query,
)

logger = logging.getLogger(__name__)

STAFF = require_roles(Role.ADMIN, Role.PASTOR)
ADMIN = require_roles(Role.ADMIN)

router = APIRouter(prefix="/api")


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_engine(request: Request):
    return request.app.state.engine


def _check_id(record_id: str) -> str:
    if not is_uuid(record_id):
        result = ValidationResult()
        result.add('id', 'Invalid ID format')
        raise ValidationError(result)
    return record_id.strip()


def _unique_slug(session, model, title: str, exclude_id: Optional[str] = None) -> str:
    base = slugify(title) or 'post'
    slug, n = base, 2
    while True:
        existing = session.exec(select(model).where(model.slug == slug)).first()
        if existing is None or existing.id == exclude_id:
            return slug
        slug = f"{base}-{n}"
        n += 1


def _discard_upload(processed: Optional[ProcessedFile]):
    """Remove a freshly stored file when the record it belonged to was not saved."""
    if processed is not None:
        delete_uploaded_file(processed.path)


def _contains(term: str) -> str:
    """LIKE pattern matching `term` literally anywhere in the column."""
    escaped = term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


def _replace_image(old_url: Optional[str], uploads_root: str):
    info = get_file_from_url(old_url, uploads_root)
    if info:
        delete_uploaded_file(info['path'])


def register_exception_handlers(app: FastAPI):
    """Map the pipeline error taxonomy to `{success: false, message}` responses."""

    @app.exception_handler(ChurchCMSError)
    async def cms_error_handler(request: Request, exc: ChurchCMSError):
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})

    @app.exception_handler(SQLAlchemyError)
    async def db_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        content = {"success": False, "message": "Database error"}
        if request.app.state.settings.debug_mode:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        content = {"success": False, "message": "Internal server error"}
        if request.app.state.settings.debug_mode:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        """Manage application lifecycle (startup and shutdown events)."""
        configure_logging(settings)
        logger.info("Starting church_cms API (uploads root: %s)", settings.uploads_root)

        for folder in ('', DEFAULT_UPLOAD_FOLDER, BLOG_UPLOAD_FOLDER, MINISTRY_UPLOAD_FOLDER):
            os.makedirs(os.path.join(settings.uploads_root, folder), exist_ok=True)

        app_instance.state.engine = init_db(settings.database_url)
        app_instance.state.db = Database(app_instance.state.engine)

        yield

        logger.info("Shutting down church_cms API")
        app_instance.state.engine.dispose()

    app_instance = FastAPI(title="church_cms", description="Church website content API", version="0.1.0", lifespan=lifespan)
    app_instance.state.settings = settings
    app_instance.state.jwt_manager = JWTManager(settings.jwt_secret, settings.jwt_algorithm, settings.jwt_expiry_days)

    app_instance.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Accept", "Origin"],
    )

    register_exception_handlers(app_instance)
    app_instance.include_router(router)
    app_instance.mount(UPLOADS_URL_PREFIX, StaticFiles(directory=settings.uploads_root, check_dir=False), name='uploads')
    return app_instance


@router.get("/health", tags=["health"])
def health() -> Dict[str, Any]:
    return {"status": "ok", "message": "Server is running", "timestamp": _now().isoformat()}


@router.post("/upload", tags=["uploads"], status_code=201)
async def upload_file(request: Request, identity: Identity = Depends(STAFF)):
    """Generic upload into a caller-named folder (form field `folder`)."""
    settings = request.app.state.settings
    form = await request.form() if request.headers.get('content-type', '').startswith('multipart/form-data') else {}
    folder = form.get('folder') or DEFAULT_UPLOAD_FOLDER
    if not isinstance(folder, str):
        raise UploadError("Invalid folder")
    options = settings.upload_options(required=True)
    candidate = form.get(options.field_name)
    processed = await handle_upload(candidate if isinstance(candidate, UploadFile) else None, folder, options, settings.uploads_root)
    return {"success": True, **processed.model_dump(exclude={'path'})}


# Sermons

@router.get("/sermons", tags=["sermons"])
def list_sermons(
    request: Request,
    identity: Optional[Identity] = Depends(optional_auth),
    params: dict = Depends(validated_query(SERMON_LIST_RULES)),
):
    """List sermons with filters, sorting and pagination."""
    page, limit = params['page'], params['limit']
    stmt = select(Sermon).where(Sermon.deleted_at == None)  # noqa: E711

    if params.get('search'):
        like = _contains(params['search'])
        stmt = stmt.where(or_(
            col(Sermon.title).ilike(like, escape='\\'),
            col(Sermon.description).ilike(like, escape='\\'),
            col(Sermon.speaker).ilike(like, escape='\\'),
        ))
    if params.get('speaker'):
        stmt = stmt.where(col(Sermon.speaker).ilike(_contains(params['speaker']), escape='\\'))
    if params.get('bible_passage'):
        stmt = stmt.where(col(Sermon.bible_passage).ilike(_contains(params['bible_passage']), escape='\\'))
    if params.get('startDate') is not None:
        stmt = stmt.where(Sermon.sermon_date >= params['startDate'])
    if params.get('endDate') is not None:
        stmt = stmt.where(Sermon.sermon_date <= params['endDate'])

    if not has_role(identity, Role.ADMIN, Role.PASTOR):
        stmt = stmt.where(Sermon.is_published == True)  # noqa: E712
    elif params.get('is_published') is not None:
        stmt = stmt.where(Sermon.is_published == params['is_published'])
    if params.get('is_featured') is not None:
        stmt = stmt.where(Sermon.is_featured == params['is_featured'])

    sort_col = col(getattr(Sermon, params.get('sortBy') or 'sermon_date'))
    order = sort_col.desc() if params['order'] == 'desc' else sort_col.asc()

    with session_scope(request.app.state.engine) as session:
        total = session.exec(select(func.count()).select_from(stmt.subquery())).one()
        rows = session.exec(stmt.order_by(order).offset((page - 1) * limit).limit(limit)).all()
        data = [r.model_dump(mode='json') for r in rows]

    return {
        "success": True,
        "data": data,
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }


@router.get("/sermons/{sermon_id}", tags=["sermons"])
def get_sermon(sermon_id: str, request: Request, identity: Optional[Identity] = Depends(optional_auth), db: Database = Depends(get_db)):
    sermon_id = _check_id(sermon_id)
    with session_scope(request.app.state.engine) as session:
        sermon = get_live(session, Sermon, sermon_id)
        if sermon is None or (not sermon.is_published and not has_role(identity, Role.ADMIN, Role.PASTOR)):
            raise HTTPException(status_code=404, detail="Sermon not found")
        data = sermon.model_dump(mode='json')

    db.execute("UPDATE sermons SET view_count = view_count + 1 WHERE id = :id", {'id': sermon_id})
    data['view_count'] += 1
    return {"success": True, "data": data}


@router.post("/sermons", tags=["sermons"], status_code=201)
def create_sermon(
    request: Request,
    identity: Identity = Depends(STAFF),
    data: dict = Depends(validated_body(SERMON_RULES)),
):
    fields = {k: v for k, v in data.items() if k in SERMON_RULES.names()}
    with session_scope(request.app.state.engine, commit=True) as session:
        sermon = Sermon(**fields)
        sermon.slug = _unique_slug(session, Sermon, sermon.title)
        session.add(sermon)
        session.flush()
        result = sermon.model_dump(mode='json')
    logger.info("Sermon %s created by %s", result['id'], identity.id)
    return {"success": True, "data": result}


@router.put("/sermons/{sermon_id}", tags=["sermons"])
def update_sermon(
    sermon_id: str,
    request: Request,
    identity: Identity = Depends(STAFF),
    data: dict = Depends(validated_body(SERMON_RULES)),
):
    sermon_id = _check_id(sermon_id)
    with session_scope(request.app.state.engine, commit=True) as session:
        sermon = get_live(session, Sermon, sermon_id)
        if sermon is None:
            raise HTTPException(status_code=404, detail="Sermon not found")
        title_changed = data['title'] != sermon.title
        for key in SERMON_RULES.names():
            if key in data:
                setattr(sermon, key, data[key])
        if title_changed:
            sermon.slug = _unique_slug(session, Sermon, sermon.title, exclude_id=sermon.id)
        sermon.updated_at = _now()
        session.add(sermon)
        session.flush()
        result = sermon.model_dump(mode='json')
    return {"success": True, "data": result}


@router.delete("/sermons/{sermon_id}", tags=["sermons"])
def delete_sermon(sermon_id: str, request: Request, identity: Identity = Depends(ADMIN)):
    sermon_id = _check_id(sermon_id)
    with session_scope(request.app.state.engine, commit=True) as session:
        sermon = get_live(session, Sermon, sermon_id)
        if sermon is None:
            raise HTTPException(status_code=404, detail="Sermon not found")
        sermon.deleted_at = _now()
        session.add(sermon)
    logger.info("Sermon %s deleted by %s", sermon_id, identity.id)
    return {"success": True, "message": "Sermon deleted successfully"}


@router.put("/sermons/{sermon_id}/download", tags=["sermons"])
def increment_download_count(sermon_id: str, identity: Optional[Identity] = Depends(optional_auth), db: Database = Depends(get_db)):
    sermon_id = _check_id(sermon_id)
    result = db.execute(
        "UPDATE sermons SET download_count = download_count + 1 WHERE id = :id AND deleted_at IS NULL",
        {'id': sermon_id},
    )
    if result.row_count == 0:
        raise HTTPException(status_code=404, detail="Sermon not found")
    count = db.query("SELECT download_count FROM sermons WHERE id = :id", {'id': sermon_id}).rows[0]['download_count']
    return {"success": True, "data": {"download_count": count}}


@router.post("/sermons/{sermon_id}/like", tags=["sermons"])
def toggle_like(
    sermon_id: str,
    identity: Optional[Identity] = Depends(optional_auth),
    data: dict = Depends(validated_body(LIKE_RULES)),
    db: Database = Depends(get_db),
):
    sermon_id = _check_id(sermon_id)
    with db.get_connection() as tx:
        found = tx.query("SELECT like_count FROM sermons WHERE id = :id AND deleted_at IS NULL", {'id': sermon_id})
        if not found.rows:
            tx.rollback()
            raise HTTPException(status_code=404, detail="Sermon not found")
        delta = 1 if data['action'] == 'like' else -1
        likes = max(0, found.rows[0]['like_count'] + delta)
        tx.execute("UPDATE sermons SET like_count = :likes WHERE id = :id", {'likes': likes, 'id': sermon_id})
        tx.commit()
    return {"success": True, "data": {"like_count": likes}}


@router.post("/sermons/{sermon_id}/share", tags=["sermons"])
def increment_share_count(
    sermon_id: str,
    identity: Optional[Identity] = Depends(optional_auth),
    data: dict = Depends(validated_body(SHARE_RULES)),
    db: Database = Depends(get_db),
):
    sermon_id = _check_id(sermon_id)
    with db.get_connection() as tx:
        result = tx.execute(
            "UPDATE sermons SET share_count = share_count + 1 WHERE id = :id AND deleted_at IS NULL",
            {'id': sermon_id},
        )
        if result.row_count == 0:
            tx.rollback()
            raise HTTPException(status_code=404, detail="Sermon not found")
        count = tx.query("SELECT share_count FROM sermons WHERE id = :id", {'id': sermon_id}).rows[0]['share_count']
        tx.commit()
    logger.debug("Sermon %s shared via %s", sermon_id, data.get('platform') or 'unknown')
    return {"success": True, "data": {"share_count": count, "platform": data.get('platform')}}


# Blogs

@router.get("/blogs", tags=["blogs"])
def list_blogs(request: Request, identity: Optional[Identity] = Depends(optional_auth)):
    stmt = select(Blog).where(Blog.deleted_at == None)  # noqa: E711
    if not has_role(identity, Role.ADMIN, Role.PASTOR):
        stmt = stmt.where(Blog.published_at != None)  # noqa: E711
    with session_scope(request.app.state.engine) as session:
        rows = session.exec(stmt.order_by(col(Blog.created_at).desc())).all()
        return {"success": True, "data": [r.model_dump(mode='json') for r in rows]}


@router.get("/blogs/{blog_id}", tags=["blogs"])
def get_blog(blog_id: str, request: Request, identity: Optional[Identity] = Depends(optional_auth)):
    with session_scope(request.app.state.engine) as session:
        blog = get_live(session, Blog, blog_id) if is_uuid(blog_id) else session.exec(
            select(Blog).where(Blog.slug == blog_id, Blog.deleted_at == None)  # noqa: E711
        ).first()
        if blog is None or (blog.published_at is None and not has_role(identity, Role.ADMIN, Role.PASTOR)):
            raise HTTPException(status_code=404, detail="Blog post not found")
        return {"success": True, "data": blog.model_dump(mode='json')}


@router.post("/blogs", tags=["blogs"], status_code=201)
def create_blog(
    request: Request,
    identity: Identity = Depends(STAFF),
    data: dict = Depends(validated_body(BLOG_RULES)),
    processed: Optional[ProcessedFile] = Depends(upload_dependency(BLOG_UPLOAD_FOLDER, field_name='featured_image')),
):
    try:
        with session_scope(request.app.state.engine, commit=True) as session:
            blog = Blog(
                title=data['title'],
                content=data['content'],
                excerpt=data.get('excerpt'),
                featured_image=processed.url if processed else None,
                author_id=identity.id,
                published_at=_now() if data['publish'] else None,
            )
            blog.slug = _unique_slug(session, Blog, blog.title)
            session.add(blog)
            session.flush()
            result = blog.model_dump(mode='json')
    except Exception:
        _discard_upload(processed)
        raise
    return {"success": True, "data": result}


@router.put("/blogs/{blog_id}", tags=["blogs"])
def update_blog(
    blog_id: str,
    request: Request,
    identity: Identity = Depends(STAFF),
    data: dict = Depends(validated_body(BLOG_UPDATE_RULES)),
    processed: Optional[ProcessedFile] = Depends(upload_dependency(BLOG_UPLOAD_FOLDER, field_name='featured_image')),
):
    blog_id = _check_id(blog_id)
    uploads_root = request.app.state.settings.uploads_root
    old_image = None
    try:
        with session_scope(request.app.state.engine, commit=True) as session:
            blog = get_live(session, Blog, blog_id)
            if blog is None:
                raise HTTPException(status_code=404, detail="Blog post not found")
            if data.get('title') and data['title'] != blog.title:
                blog.title = data['title']
                blog.slug = _unique_slug(session, Blog, blog.title, exclude_id=blog.id)
            if data.get('content'):
                blog.content = data['content']
            if 'excerpt' in data:
                blog.excerpt = data['excerpt']
            if data.get('publish') and blog.published_at is None:
                blog.published_at = _now()
            elif data.get('publish') is False:
                blog.published_at = None
            if processed is not None:
                old_image = blog.featured_image
                blog.featured_image = processed.url
            blog.updated_at = _now()
            session.add(blog)
            session.flush()
            result = blog.model_dump(mode='json')
    except Exception:
        _discard_upload(processed)
        raise
    _replace_image(old_image, uploads_root)
    return {"success": True, "data": result}


@router.delete("/blogs/{blog_id}", tags=["blogs"])
def delete_blog(blog_id: str, request: Request, identity: Identity = Depends(ADMIN)):
    blog_id = _check_id(blog_id)
    with session_scope(request.app.state.engine, commit=True) as session:
        blog = get_live(session, Blog, blog_id)
        if blog is None:
            raise HTTPException(status_code=404, detail="Blog post not found")
        image = blog.featured_image
        blog.deleted_at = _now()
        blog.featured_image = None
        session.add(blog)
    _replace_image(image, request.app.state.settings.uploads_root)
    return {"success": True, "message": "Blog post deleted successfully"}


# Ministries

@router.get("/ministries", tags=["ministries"])
def list_ministries(request: Request):
    with session_scope(request.app.state.engine) as session:
        rows = session.exec(select(Ministry).where(Ministry.is_active == True).order_by(Ministry.name)).all()  # noqa: E712
        return {"success": True, "data": [r.model_dump(mode='json') for r in rows]}


@router.get("/ministries/{ministry_id}", tags=["ministries"])
def get_ministry(ministry_id: str, request: Request):
    ministry_id = _check_id(ministry_id)
    with session_scope(request.app.state.engine) as session:
        ministry = session.get(Ministry, ministry_id)
        if ministry is None:
            raise HTTPException(status_code=404, detail="Ministry not found")
        return {"success": True, "data": ministry.model_dump(mode='json')}


@router.post("/ministries", tags=["ministries"], status_code=201)
def create_ministry(
    request: Request,
    identity: Identity = Depends(STAFF),
    data: dict = Depends(validated_body(MINISTRY_RULES)),
    processed: Optional[ProcessedFile] = Depends(upload_dependency(MINISTRY_UPLOAD_FOLDER, field_name='cover_image')),
):
    fields = {k: v for k, v in data.items() if k in MINISTRY_RULES.names() and v is not None}
    try:
        with session_scope(request.app.state.engine, commit=True) as session:
            ministry = Ministry(**fields, cover_image_url=processed.url if processed else None)
            session.add(ministry)
            session.flush()
            result = ministry.model_dump(mode='json')
    except Exception:
        _discard_upload(processed)
        raise
    return {"success": True, "data": result}


@router.put("/ministries/{ministry_id}", tags=["ministries"])
def update_ministry(
    ministry_id: str,
    request: Request,
    identity: Identity = Depends(STAFF),
    data: dict = Depends(validated_body(MINISTRY_RULES)),
    processed: Optional[ProcessedFile] = Depends(upload_dependency(MINISTRY_UPLOAD_FOLDER, field_name='cover_image')),
):
    ministry_id = _check_id(ministry_id)
    old_image = None
    try:
        with session_scope(request.app.state.engine, commit=True) as session:
            ministry = session.get(Ministry, ministry_id)
            if ministry is None:
                raise HTTPException(status_code=404, detail="Ministry not found")
            for key in MINISTRY_RULES.names():
                if key in data:
                    setattr(ministry, key, data[key])
            if processed is not None:
                old_image = ministry.cover_image_url
                ministry.cover_image_url = processed.url
            ministry.updated_at = _now()
            session.add(ministry)
            session.flush()
            result = ministry.model_dump(mode='json')
    except Exception:
        _discard_upload(processed)
        raise
    _replace_image(old_image, request.app.state.settings.uploads_root)
    return {"success": True, "data": result}


@router.delete("/ministries/{ministry_id}", tags=["ministries"])
def delete_ministry(ministry_id: str, request: Request, identity: Identity = Depends(ADMIN)):
    ministry_id = _check_id(ministry_id)
    with session_scope(request.app.state.engine, commit=True) as session:
        ministry = session.get(Ministry, ministry_id)
        if ministry is None:
            raise HTTPException(status_code=404, detail="Ministry not found")
        image = ministry.cover_image_url
        session.delete(ministry)
    _replace_image(image, request.app.state.settings.uploads_root)
    return {"success": True, "message": "Ministry deleted successfully"}


app = create_app()
