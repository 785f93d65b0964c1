from __future__ import annotations


class FulfillmentError(Exception):
    pass


class OrderValidationError(FulfillmentError, ValueError):
    pass


class OrderNotFoundError(FulfillmentError, LookupError):
    pass


class InvalidTransitionError(FulfillmentError, RuntimeError):
    pass


class SubmissionGroupingError(FulfillmentError, RuntimeError):
    pass


class DistributorTransportError(FulfillmentError):
    pass


class CrmTransportError(FulfillmentError):
    pass


class SyncConflictError(FulfillmentError):
    def __init__(self, deal_key: str, detail: str):
        super().__init__(f"crm deal {deal_key} inconsistent after corrected retry: {detail}")
        self.deal_key = deal_key
        self.detail = detail


class ReconciliationAborted(FulfillmentError):
    pass
