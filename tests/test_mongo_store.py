from __future__ import annotations

from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from hero_points.db.base import DuplicateRecordError, TransientStoreError
from hero_points.db.mongo import _translate
from hero_points.errors import StoreUnavailable


def test_duplicate_key_becomes_duplicate_record():
    exc = DuplicateKeyError(
        "E11000 duplicate key",
        11000,
        {"keyValue": {"user_id": "user-1", "reason": "iap_purchase", "dedup_key": "pi_1"}},
    )

    translated = _translate(exc)

    assert isinstance(translated, DuplicateRecordError)
    assert translated.key["dedup_key"] == "pi_1"


def test_labelled_transaction_errors_are_transient():
    conflict = OperationFailure(
        "WriteConflict", 112, {"errorLabels": ["TransientTransactionError"]}
    )
    unknown_commit = PyMongoError(
        "commit result unknown", error_labels=["UnknownTransactionCommitResult"]
    )

    assert isinstance(_translate(conflict), TransientStoreError)
    assert isinstance(_translate(unknown_commit), TransientStoreError)


def test_other_driver_errors_mean_store_unavailable():
    translated = _translate(OperationFailure("not authorized", 13, {}))

    assert isinstance(translated, StoreUnavailable)
    assert translated.status_code == 500
