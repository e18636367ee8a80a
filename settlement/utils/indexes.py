from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Wallets: one per user, the backstop against concurrent lazy creation
    await _create_index_safe(
        db.wallets,
        [("user_id", ASCENDING)],
        name="wallets_user_unique_idx",
        unique=True,
    )
    await _create_index_safe(
        db.wallets,
        [("has_deficit", ASCENDING)],
        name="wallets_deficit_idx",
    )

    # Wallet transactions: unique reference rejects double application
    await _create_index_safe(
        db.wallet_transactions,
        [("reference", ASCENDING)],
        name="wallet_transactions_reference_unique",
        unique=True,
    )
    await _create_index_safe(
        db.wallet_transactions,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="wallet_transactions_user_created_at_idx",
    )

    # Withdrawal requests
    await _create_index_safe(
        db.withdrawal_requests,
        [("status", ASCENDING), ("requested_at", DESCENDING)],
        name="withdrawal_requests_status_requested_at_idx",
    )
    await _create_index_safe(
        db.withdrawal_requests,
        [("user_id", ASCENDING), ("requested_at", DESCENDING)],
        name="withdrawal_requests_user_requested_at_idx",
    )

    # Orders
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("profits_distributed", ASCENDING)],
        name="orders_status_distributed_idx",
    )
    await _create_index_safe(
        db.orders,
        [("supplier_id", ASCENDING), ("status", ASCENDING)],
        name="orders_supplier_status_idx",
    )
    await _create_index_safe(
        db.orders,
        [("marketer_id", ASCENDING), ("status", ASCENDING)],
        name="orders_marketer_status_idx",
    )

    # Audit / timeline / alerts
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_at_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("action", ASCENDING), ("created_at", DESCENDING)],
        name="audit_logs_action_created_at_idx",
    )
    await _create_index_safe(
        db.operator_alerts,
        [("resolved", ASCENDING), ("created_at", DESCENDING)],
        name="operator_alerts_open_idx",
    )
