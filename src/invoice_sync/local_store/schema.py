"""
Record types and their table layout.

Maps each domain record type to its SQLite table and the record fields that
are stored as indexed columns. Everything else lives only in the JSON document.
"""

from dataclasses import dataclass
from enum import Enum


class RecordType(str, Enum):
    """Domain record types held by the local store."""

    INVOICES = "invoices"
    INVOICE_LINE_ITEMS = "invoiceLineItems"
    CUSTOMERS = "customers"
    PRODUCTS = "products"
    BUSINESS_SETTINGS = "businessSettings"
    TEMPLATE_CONFIGS = "templateConfigs"


@dataclass(frozen=True)
class TableSpec:
    """Table name plus record field -> indexed column mapping."""

    table: str
    columns: dict[str, str]

    @property
    def scoped_by_business(self) -> bool:
        return "businessId" in self.columns

    def column_for(self, field_name: str) -> str:
        """Return the SQL column for an indexed record field."""
        if field_name == "id":
            return "id"
        try:
            return self.columns[field_name]
        except KeyError:
            raise ValueError(f"{field_name!r} is not an indexed field of {self.table}") from None


TABLES: dict[RecordType, TableSpec] = {
    RecordType.INVOICES: TableSpec(
        "invoices",
        {
            "businessId": "business_id",
            "invoiceNumber": "invoice_number",
            "customerId": "customer_id",
            "status": "status",
            "date": "date",
            "issuedAt": "issued_at",
            "updatedAt": "updated_at",
        },
    ),
    RecordType.INVOICE_LINE_ITEMS: TableSpec(
        "invoice_line_items",
        {"invoiceId": "invoice_id"},
    ),
    RecordType.CUSTOMERS: TableSpec(
        "customers",
        {
            "businessId": "business_id",
            "name": "name",
            "phone": "phone",
            "updatedAt": "updated_at",
        },
    ),
    RecordType.PRODUCTS: TableSpec(
        "products",
        {"businessId": "business_id", "name": "name", "updatedAt": "updated_at"},
    ),
    RecordType.BUSINESS_SETTINGS: TableSpec("business_settings", {}),
    RecordType.TEMPLATE_CONFIGS: TableSpec(
        "template_configs",
        {
            "businessId": "business_id",
            "baseTemplateId": "base_template_id",
            "isActive": "is_active",
        },
    ),
}

# Key under which the most recent successful pull timestamp is stored
LAST_SYNC_AT_KEY = "lastSyncAt"
