from __future__ import annotations

from backend.store import RecordStore, categories, tags

DEFAULT_CATEGORIES = [
    {"name": "Food", "type": "expense", "icon": "🍔", "color": "#F59E0B"},
    {"name": "Shopping", "type": "expense", "icon": "🛒", "color": "#3B82F6"},
    {"name": "Housing", "type": "expense", "icon": "🏠", "color": "#6B7280"},
    {"name": "Transportation", "type": "expense", "icon": "🚌", "color": "#FCD34D"},
    {"name": "Vehicle", "type": "expense", "icon": "🚗", "color": "#EF4444"},
    {"name": "Entertainment", "type": "expense", "icon": "🎬", "color": "#8B5CF6"},
    {"name": "Bills", "type": "expense", "icon": "🧾", "color": "#EF4444"},
    {"name": "Subscriptions", "type": "expense", "icon": "🔄", "color": "#6366F1"},
    {"name": "Medical", "type": "expense", "icon": "💊", "color": "#EF4444"},
    {"name": "Gifts", "type": "expense", "icon": "🎁", "color": "#EC4899"},
    {"name": "Travel", "type": "expense", "icon": "✈️", "color": "#0EA5E9"},
    {"name": "Pets", "type": "expense", "icon": "🐾", "color": "#78350F"},
    {"name": "Loans", "type": "expense", "icon": "💸", "color": "#EF4444"},
    {"name": "Electronics", "type": "expense", "icon": "🔌", "color": "#6B7280"},
    {"name": "Others", "type": "expense", "icon": "📦", "color": "#9CA3AF"},
    {"name": "Investments", "type": "income", "icon": "📈", "color": "#10B981"},
    {"name": "Housing/Rental", "type": "income", "icon": "🏠", "color": "#3B82F6"},
    {"name": "Salary/Wages", "type": "income", "icon": "💰", "color": "#10B981"},
    {"name": "Bonus", "type": "income", "icon": "💎", "color": "#3B82F6"},
    {"name": "Gifts", "type": "income", "icon": "🎁", "color": "#EC4899"},
    {"name": "Deposits", "type": "income", "icon": "🏦", "color": "#10B981"},
    {"name": "Other", "type": "income", "icon": "📦", "color": "#9CA3AF"},
]

DEFAULT_TAGS = [
    {"name": "Vegetables", "color": "#10B981"},
    {"name": "Fruits", "color": "#F59E0B"},
    {"name": "Groceries", "color": "#3B82F6"},
    {"name": "Other", "color": "#9CA3AF"},
    {"name": "One Time", "color": "#8B5CF6"},
]


def ensure_default_categories(store: RecordStore, user_id: int) -> list[dict]:
    existing = store.select(categories, {"created_by": user_id})
    if existing:
        return []
    return store.insert(
        categories, [{**category, "created_by": user_id} for category in DEFAULT_CATEGORIES]
    )


def ensure_default_tags(store: RecordStore, user_id: int) -> list[dict]:
    existing = store.select(tags, {"created_by": user_id})
    if existing:
        return []
    return store.insert(tags, [{**tag, "created_by": user_id} for tag in DEFAULT_TAGS])


def ensure_account_defaults(store: RecordStore, user_id: int) -> None:
    """Seed categories and tags for an account that has none of either."""
    with store.transaction() as tx:
        ensure_default_categories(tx, user_id)
        ensure_default_tags(tx, user_id)
