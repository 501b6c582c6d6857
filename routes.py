import uuid
from datetime import date

from dateutil.relativedelta import relativedelta
from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import login_required

from attachments import delete_note_attachments, reconcile
from blob_store import BlobStoreError, public_url, safe_extension, temp_blob_path
from envelope import RichContent, decode_content, encode_envelope
from models import (
    EXPENSE_TYPES,
    Category,
    Expense,
    Note,
    ValidationError,
    db,
    expense_fields,
    parse_date,
    utcnow,
)
from reports import budget_utilization, category_spending, expense_summary

categories_bp = Blueprint("categories", __name__, url_prefix="/categories")
expenses_bp = Blueprint("expenses", __name__, url_prefix="/expenses")
notes_bp = Blueprint("notes", __name__, url_prefix="/notes")
uploads_bp = Blueprint("uploads", __name__, url_prefix="/uploads")
health_bp = Blueprint("health", __name__)


def get_blob_store():
    return current_app.extensions["blob_store"]


def _payload():
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        abort(400, description="Request body must be a JSON object")
    return payload


def _flag(value):
    return str(value).lower() in ("1", "true", "yes")


def _arg_date(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return parse_date(value)
    except ValidationError as e:
        abort(400, description=str(e))


def _arg_number(name, cast=float):
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return cast(value)
    except ValueError:
        abort(400, description=f"Invalid {name}: {value}")


# ==============================
# HEALTH
# ==============================

@health_bp.get("/health")
def health():
    return jsonify({"status": "OK", "timestamp": utcnow().isoformat() + "Z"})


# ==============================
# CATEGORIES
# ==============================

def _budget(value):
    try:
        budget = float(value)
    except (TypeError, ValueError):
        abort(400, description="Budget must be a number")
    if budget < 0:
        abort(400, description="Budget cannot be negative")
    return budget


def _get_category(category_id):
    category = db.session.get(Category, category_id)
    if category is None:
        abort(404, description="Category not found")
    return category


@categories_bp.get("")
@login_required
def list_categories():
    q = Category.query
    if "isActive" in request.args:
        q = q.filter(Category.is_active == _flag(request.args["isActive"]))
    if "show" in request.args:
        q = q.filter(Category.show == _flag(request.args["show"]))
    search = request.args.get("search")
    if search:
        pattern = f"%{search}%"
        q = q.filter(db.or_(Category.name.ilike(pattern), Category.description.ilike(pattern)))
    return jsonify([c.to_dict() for c in q.order_by(Category.name.asc()).all()])


@categories_bp.get("/spending")
@login_required
def categories_spending():
    today = date.today()
    start = _arg_date("dateFrom") or today.replace(day=1)
    end = _arg_date("dateTo") or today + relativedelta(day=31)

    categories = (Category.query
                  .filter(Category.is_active.is_(True), Category.show.is_(True))
                  .order_by(Category.name.asc())
                  .all())
    expenses = Expense.query.filter(Expense.date >= start, Expense.date <= end).all()
    rows = category_spending(categories, expenses)
    return jsonify({
        "dateFrom": start.isoformat(),
        "dateTo": end.isoformat(),
        "categories": rows,
        "summary": budget_utilization(rows),
    })


@categories_bp.get("/<int:category_id>")
@login_required
def get_category(category_id):
    return jsonify(_get_category(category_id).to_dict())


@categories_bp.post("")
@login_required
def create_category():
    payload = _payload()
    if not payload.get("name") or not payload.get("color"):
        abort(400, description="Name and color are required")

    category = Category(
        name=payload["name"],
        budget=_budget(payload.get("budget") or 0),
        color=payload["color"],
        icon=payload.get("icon") or None,
        description=payload.get("description") or None,
        is_active=True,
        show=True,
    )
    db.session.add(category)
    db.session.commit()
    return jsonify(category.to_dict()), 201


@categories_bp.put("/<int:category_id>")
@login_required
def update_category(category_id):
    category = _get_category(category_id)
    payload = _payload()

    updates = {}
    for key in ("name", "color", "icon", "description"):
        if key in payload:
            updates[key] = payload[key]
    if "budget" in payload:
        updates["budget"] = _budget(payload["budget"])
    if "isActive" in payload:
        updates["is_active"] = bool(payload["isActive"])
    if "show" in payload:
        updates["show"] = bool(payload["show"])
    if not updates:
        abort(400, description="No valid fields to update")

    for attr, value in updates.items():
        setattr(category, attr, value)
    category.updated_at = utcnow()
    db.session.commit()
    return jsonify(category.to_dict())


@categories_bp.delete("/<int:category_id>")
@login_required
def delete_category(category_id):
    category = _get_category(category_id)
    if Expense.query.filter_by(category_id=category.id).count() > 0:
        abort(400, description="Cannot delete category with associated expenses. "
                               "Please delete or reassign expenses first.")
    db.session.delete(category)
    db.session.commit()
    return jsonify({"message": "Category deleted successfully"})


@categories_bp.get("/<int:category_id>/expenses")
@login_required
def category_expenses(category_id):
    category = _get_category(category_id)
    expenses = Expense.query.filter_by(category_id=category.id).order_by(Expense.date.desc()).all()
    return jsonify([e.to_dict() for e in expenses])


# ==============================
# EXPENSES
# ==============================

def _get_expense(expense_id):
    expense = db.session.get(Expense, expense_id)
    if expense is None:
        abort(404, description="Expense not found")
    return expense


def _validated(payload, partial=False):
    try:
        return expense_fields(payload, partial=partial)
    except ValidationError as e:
        abort(400, description=str(e))


@expenses_bp.get("")
@login_required
def list_expenses():
    q = Expense.query
    category_id = _arg_number("categoryId", int)
    if category_id is not None:
        q = q.filter(Expense.category_id == category_id)
    if request.args.get("type"):
        q = q.filter(Expense.type == request.args["type"])
    date_from = _arg_date("dateFrom")
    if date_from:
        q = q.filter(Expense.date >= date_from)
    date_to = _arg_date("dateTo")
    if date_to:
        q = q.filter(Expense.date <= date_to)
    min_amount = _arg_number("minAmount")
    if min_amount is not None:
        q = q.filter(Expense.amount >= min_amount)
    max_amount = _arg_number("maxAmount")
    if max_amount is not None:
        q = q.filter(Expense.amount <= max_amount)
    search = request.args.get("search")
    if search:
        pattern = f"%{search}%"
        q = q.filter(db.or_(Expense.title.ilike(pattern), Expense.payment_method.ilike(pattern)))
    if "isRecurring" in request.args:
        q = q.filter(Expense.is_recurring == _flag(request.args["isRecurring"]))

    limit = _arg_number("limit", int) or 100
    offset = _arg_number("offset", int) or 0
    expenses = q.order_by(Expense.date.desc(), Expense.id.desc()).limit(limit).offset(offset).all()

    rows = [e.to_dict() for e in expenses]
    tags = request.args.getlist("tags")
    if tags:
        rows = [r for r in rows if any(t in tags for t in r["tags"])]
    return jsonify(rows)


@expenses_bp.get("/summary")
@login_required
def summary():
    q = Expense.query
    date_from = _arg_date("dateFrom")
    if date_from:
        q = q.filter(Expense.date >= date_from)
    date_to = _arg_date("dateTo")
    if date_to:
        q = q.filter(Expense.date <= date_to)
    return jsonify(expense_summary(q.all()))


@expenses_bp.get("/recurring")
@login_required
def recurring_expenses():
    expenses = Expense.query.filter(Expense.is_recurring.is_(True)).order_by(Expense.date.desc()).all()
    return jsonify([e.to_dict() for e in expenses])


@expenses_bp.get("/type/<expense_type>")
@login_required
def expenses_by_type(expense_type):
    if expense_type not in EXPENSE_TYPES:
        abort(400, description='Type must be either "expense" or "income"')
    expenses = Expense.query.filter_by(type=expense_type).order_by(Expense.date.desc()).all()
    return jsonify([e.to_dict() for e in expenses])


@expenses_bp.get("/month/<int:year>/<int:month>")
@login_required
def expenses_by_month(year, month):
    if not 1 <= month <= 12:
        abort(400, description="Month must be between 1 and 12")
    start = date(year, month, 1)
    end = start + relativedelta(day=31)
    expenses = (Expense.query
                .filter(Expense.date >= start, Expense.date <= end)
                .order_by(Expense.date.desc())
                .all())
    return jsonify([e.to_dict() for e in expenses])


@expenses_bp.get("/<int:expense_id>")
@login_required
def get_expense(expense_id):
    return jsonify(_get_expense(expense_id).to_dict())


@expenses_bp.post("")
@login_required
def create_expense():
    expense = Expense(**_validated(_payload()))
    db.session.add(expense)
    db.session.commit()
    return jsonify(expense.to_dict()), 201


@expenses_bp.put("/<int:expense_id>")
@login_required
def update_expense(expense_id):
    expense = _get_expense(expense_id)
    updates = _validated(_payload(), partial=True)
    if not updates:
        abort(400, description="No valid fields to update")

    for attr, value in updates.items():
        setattr(expense, attr, value)
    expense.updated_at = utcnow()
    db.session.commit()
    return jsonify(expense.to_dict())


@expenses_bp.delete("/<int:expense_id>")
@login_required
def delete_expense(expense_id):
    expense = _get_expense(expense_id)
    db.session.delete(expense)
    db.session.commit()
    return jsonify({"message": "Expense deleted successfully"})


# ==============================
# NOTES
# ==============================

def _get_note(note_id):
    note = db.session.get(Note, note_id)
    if note is None:
        abort(404, description="Note not found")
    return note


def _save_content(note, content, existing_attachments):
    """Reconcile attachments for ``content`` and store the result on ``note``."""
    decoded = decode_content(content)
    attachments = reconcile(note.id, decoded.as_envelope().attachments,
                            existing_attachments, get_blob_store())
    if isinstance(decoded, RichContent):
        note.content = encode_envelope(decoded.html, attachments)
    else:
        note.content = decoded.as_envelope().html


@notes_bp.get("")
@login_required
def list_notes():
    notes = Note.query.order_by(Note.updated_at.desc(), Note.id.desc()).all()
    return jsonify([n.to_dict() for n in notes])


@notes_bp.get("/<int:note_id>")
@login_required
def get_note(note_id):
    return jsonify(_get_note(note_id).to_dict())


@notes_bp.post("")
@login_required
def create_note():
    payload = _payload()
    note = Note(content="")
    db.session.add(note)
    db.session.flush()
    _save_content(note, payload.get("content"), [])
    db.session.commit()
    return jsonify(note.to_dict()), 201


@notes_bp.put("/<int:note_id>")
@login_required
def update_note(note_id):
    note = _get_note(note_id)
    payload = _payload()
    if "content" in payload:
        existing = decode_content(note.content).as_envelope().attachments
        _save_content(note, payload["content"], existing)
    note.updated_at = utcnow()
    db.session.commit()
    return jsonify(note.to_dict())


@notes_bp.delete("/<int:note_id>")
@login_required
def delete_note(note_id):
    note = _get_note(note_id)
    attachments = decode_content(note.content).as_envelope().attachments
    db.session.delete(note)
    db.session.commit()
    delete_note_attachments(note_id, attachments, get_blob_store())
    return jsonify({"message": "Note deleted successfully"})


# ==============================
# UPLOADS
# ==============================

@uploads_bp.post("")
@login_required
def upload_file():
    file = request.files.get("file")
    if file is None or not file.filename:
        abort(400, description="No file provided")

    attachment_id = str(uuid.uuid4())
    storage_path = temp_blob_path(f"{attachment_id}{safe_extension(file.filename)}")
    try:
        size = get_blob_store().write_stream(storage_path, file.stream)
    except BlobStoreError:
        current_app.logger.exception("Error uploading file")
        abort(500, description="Failed to upload file")

    return jsonify({
        "id": attachment_id,
        "name": file.filename,
        "type": file.mimetype,
        "size": size,
        "url": public_url(storage_path),
        "storagePath": storage_path,
        "isTemp": True,
    }), 201
