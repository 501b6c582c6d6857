from datetime import date, datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

EXPENSE_TYPES = ("expense", "income")
RECURRING_FREQUENCIES = ("daily", "weekly", "monthly", "yearly")


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value is not None else None


# ==============================
# MODELS
# ==============================
class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, index=True)
    budget = db.Column(db.Float, nullable=False, default=0.0)
    color = db.Column(db.String(20), nullable=False)
    icon = db.Column(db.String(20))
    description = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    show = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    expenses = db.relationship("Expense", backref="category", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "budget": self.budget,
            "color": self.color,
            "icon": self.icon,
            "description": self.description,
            "isActive": bool(self.is_active),
            "show": bool(self.show),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class Expense(db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    type = db.Column(db.String(10), nullable=False, index=True)
    payment_method = db.Column(db.String(50))
    tags = db.Column(db.JSON)
    is_recurring = db.Column(db.Boolean, nullable=False, default=False, index=True)
    recurring_frequency = db.Column(db.String(10))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "amount": self.amount,
            "categoryId": self.category_id,
            "categoryName": self.category.name if self.category else None,
            "date": _iso(self.date),
            "type": self.type,
            "paymentMethod": self.payment_method,
            "tags": list(self.tags or []),
            "isRecurring": bool(self.is_recurring),
            "recurringFrequency": self.recurring_frequency,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class Note(db.Model):
    __tablename__ = "notes"

    id = db.Column(db.Integer, primary_key=True)
    content = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "content": self.content,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class AuthToken(db.Model):
    __tablename__ = "auth_tokens"

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def is_expired(self, now=None):
        return self.expires_at <= (now or utcnow())


DEFAULT_CATEGORIES = [
    {"name": "Food & Dining", "budget": 500, "color": "#FF6B6B", "icon": "🍽️",
     "description": "Restaurants, groceries, and dining out"},
    {"name": "Transportation", "budget": 200, "color": "#4ECDC4", "icon": "🚗",
     "description": "Gas, public transport, and car maintenance"},
    {"name": "Entertainment", "budget": 150, "color": "#45B7D1", "icon": "🎬",
     "description": "Movies, games, and leisure activities"},
    {"name": "Shopping", "budget": 300, "color": "#96CEB4", "icon": "🛍️",
     "description": "Clothing, electronics, and general shopping"},
    {"name": "Utilities", "budget": 250, "color": "#FFEAA7", "icon": "⚡",
     "description": "Electricity, water, internet, and phone bills"},
    {"name": "Healthcare", "budget": 100, "color": "#DDA0DD", "icon": "🏥",
     "description": "Medical expenses and health-related costs"},
    {"name": "Salary", "budget": 0, "color": "#98D8C8", "icon": "💰",
     "description": "Regular income from employment", "is_active": False},
    {"name": "Freelance", "budget": 0, "color": "#F7DC6F", "icon": "💼",
     "description": "Additional income from freelance work", "is_active": False},
]


def seed_categories():
    """Insert the default categories when the table is empty. Returns how many were added."""
    if Category.query.first() is not None:
        return 0
    for data in DEFAULT_CATEGORIES:
        db.session.add(Category(**data))
    db.session.commit()
    return len(DEFAULT_CATEGORIES)


# ==============================
# PAYLOAD VALIDATION
# ==============================
class ValidationError(ValueError):
    pass


def parse_date(value):
    """Accept ``YYYY-MM-DD`` or a full ISO timestamp; return a ``date``."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")


def _amount(value):
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Amount must be a number")
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    return amount


def _tags(value):
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError("Tags must be a list")
    return [str(t) for t in value]


def expense_fields(payload, partial=False):
    """Map a camelCase expense payload onto ``Expense`` column values.

    With ``partial`` only the keys present are validated and returned.
    """
    if not partial:
        required = ("title", "amount", "categoryId", "date", "type")
        if any(payload.get(k) in (None, "") for k in required):
            raise ValidationError("Title, amount, categoryId, date, and type are required")

    fields = {}
    if "title" in payload:
        if not payload["title"]:
            raise ValidationError("Title cannot be empty")
        fields["title"] = str(payload["title"]).strip()
    if "amount" in payload:
        fields["amount"] = _amount(payload["amount"])
    if "categoryId" in payload:
        category = db.session.get(Category, payload["categoryId"]) if payload["categoryId"] else None
        if category is None:
            raise ValidationError("Category not found")
        fields["category_id"] = category.id
    if "date" in payload:
        fields["date"] = parse_date(payload["date"])
    if "type" in payload:
        if payload["type"] not in EXPENSE_TYPES:
            raise ValidationError('Type must be either "expense" or "income"')
        fields["type"] = payload["type"]
    if "paymentMethod" in payload:
        fields["payment_method"] = payload["paymentMethod"] or None
    if "tags" in payload:
        fields["tags"] = _tags(payload["tags"])
    if "isRecurring" in payload:
        fields["is_recurring"] = bool(payload["isRecurring"])
    if "recurringFrequency" in payload:
        frequency = payload["recurringFrequency"] or None
        if frequency is not None and frequency not in RECURRING_FREQUENCIES:
            raise ValidationError("Recurring frequency must be one of " + ", ".join(RECURRING_FREQUENCIES))
        fields["recurring_frequency"] = frequency
    return fields
