# Overview: Seed catalog for the sync configuration store (system_settings).

KEY_SYNC_ENABLED = "inventory_sync_enabled"
KEY_AUTO_UPDATE_ON_SALE = "inventory_auto_update_on_sale"
KEY_SYNC_INTERVAL_SECONDS = "inventory_sync_interval_seconds"
KEY_LAST_SYNC = "inventory_last_sync"
KEY_CONNECTION_STATUS = "inventory_connection_status"
KEY_CURRENT_WAREHOUSE_ID = "current_warehouse_id"
KEY_CURRENT_WAREHOUSE_NAME = "current_warehouse_name"

SETTINGS_CATALOG = [
    {
        "key": KEY_SYNC_ENABLED,
        "value": "true",
        "description": "Enable automatic inventory sync",
    },
    {
        "key": KEY_AUTO_UPDATE_ON_SALE,
        "value": "true",
        "description": "Automatically push stock changes to inventory on POS sale",
    },
    {
        "key": KEY_SYNC_INTERVAL_SECONDS,
        "value": "300",
        "description": "Periodic inbound sync interval in seconds (5 minutes)",
    },
    {
        "key": KEY_LAST_SYNC,
        "value": None,
        "description": "Last successful inventory sync timestamp",
    },
    {
        "key": KEY_CONNECTION_STATUS,
        "value": "not_checked",
        "description": "Inventory database connection status",
    },
    {
        "key": KEY_CURRENT_WAREHOUSE_ID,
        "value": None,
        "description": "Warehouse this POS instance operates against",
    },
    {
        "key": KEY_CURRENT_WAREHOUSE_NAME,
        "value": None,
        "description": "Display name of the current warehouse",
    },
]
