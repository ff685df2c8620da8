INCOME_CATEGORIES: tuple[str, ...] = ("KYK/Burs", "Aile Harçlığı", "Freelance/Ek İş")

EXPENSE_CATEGORIES: tuple[str, ...] = (
    "Sosyal/Keyif",
    "Beslenme",
    "Ulaşım",
    "Sabitler",
    "Okul",
)

# Synthetic bucket for expenses outside the whitelist.
OTHER_CATEGORY = "Diğer"

# Expenses in this category count as fixed expenses already paid.
FIXED_EXPENSE_CATEGORY = "Sabitler"


def is_expense_category(category: str) -> bool:
    return category in EXPENSE_CATEGORIES
