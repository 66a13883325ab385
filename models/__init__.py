from .patronage import PatronPurchaseRow, PatronUserRow  # noqa: F401
