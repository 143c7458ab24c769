from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    func,
)

metadata = MetaData()

identities = Table(
    "identities",
    metadata,
    Column("uid", String(64), primary_key=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("display_name", String(255)),
    Column("phone", String(32)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

auth_tokens = Table(
    "auth_tokens",
    metadata,
    Column("token", String(128), primary_key=True),
    Column("user_id", String(64), ForeignKey("identities.uid"), nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("name", String(255)),
    Column("phone", String(32)),
    Column("nickname", String(255)),
    Column("birth_date", Date),
    Column("gender", String(50)),
    Column("postal_code", String(16)),
    Column("city", String(255)),
    Column("state", String(255)),
    Column("financial_goal", String(500)),
    Column("balance", Numeric(12, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

user_categories = Table(
    "user_categories",
    metadata,
    Column("user_id", String(64), ForeignKey("users.id"), primary_key=True),
    Column("variable", JSON, nullable=False),
    Column("fixed", JSON, nullable=False),
    Column("salary", Numeric(12, 2)),
    Column("pay_day", Integer),
    Column("last_salary_payment", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category", String(255), nullable=False),
    Column("subcategory", String(255)),
    Column("date", DateTime, nullable=False),
    Column("paid", Boolean, nullable=False, default=False),
    Column("fixed", Boolean, nullable=False, default=False),
    Column("reminder", Boolean, nullable=False, default=False),
    Column("ignore", Boolean, nullable=False, default=False),
    Column("note", String(500), nullable=False, default=""),
    Column("source", String(255), nullable=False, default="Other"),
    Column("wallet", String(255), nullable=False, default="Wallet"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

fixed_expense_logs = Table(
    "fixed_expense_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("category_id", String(64), nullable=False),
    Column("subcategory_name", String(255), nullable=False),
    Column("last_execution", DateTime, nullable=False),
    UniqueConstraint(
        "user_id",
        "category_id",
        "subcategory_name",
        name="uq_fixed_expense_logs_key",
    ),
)

reminders = Table(
    "reminders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", String(1000)),
    Column("due_date", DateTime, nullable=False),
    Column("priority", String(10)),
    Column("category", String(255)),
    Column("is_completed", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
    UniqueConstraint("user_id", "title", name="uq_reminders_user_title"),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("target_amount", Numeric(12, 2), nullable=False),
    Column("current_amount", Numeric(12, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
)

USER_OWNED_TABLES = (
    fixed_expense_logs,
    transactions,
    reminders,
    goals,
    user_categories,
)
