import os

# Point the module-level engine at an in-memory database before any project
# module is imported.
os.environ.setdefault("BUDGET_DATABASE_URL", "sqlite://")
os.environ.setdefault("BUDGET_USER_ID", "1")
