# core/exceptions.py
"""
Billing error taxonomy shared by the payment engine and daily closures.

Every error carries a stable ``code`` for API clients, the HTTP status views
answer with, and a human-readable message for staff. Validation errors are raised before any write.
"""


class BillingError(Exception):
    code = 'billing_error'
    status_code = 400
    default_message = 'The billing operation could not be completed.'

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def as_dict(self):
        data = {'error': self.code, 'message': self.message}
        if self.details:
            data['details'] = {key: str(value) for key, value in self.details.items()}
        return data


class InvalidAmount(BillingError):
    code = 'invalid_amount'
    default_message = 'The amount is not valid for this operation.'


class InvalidPaymentMethod(InvalidAmount):
    code = 'invalid_payment_method'
    default_message = 'Unknown payment method.'


class DuplicatePayment(BillingError):
    code = 'duplicate_payment'
    status_code = 409
    default_message = 'This appointment is already fully paid.'


class MissingReason(BillingError):
    code = 'missing_reason'
    default_message = 'A reason is required for this operation.'


class MissingExpectedRevenue(BillingError):
    code = 'missing_expected_revenue'
    default_message = 'Calculate the expected revenue for this day before closing it.'


class DuplicateClosure(BillingError):
    code = 'duplicate_closure'
    status_code = 409
    default_message = 'This day has already been closed.'


class ConfirmationRequired(BillingError):
    code = 'confirmation_required'
    status_code = 409
    default_message = (
        'This change downgrades a paid appointment. Money may need to be physically '
        'refunded; confirm the change to continue.'
    )


class PaymentFailed(BillingError):
    code = 'payment_failed'
    status_code = 503
    default_message = 'The payment could not be saved. No changes were made; please try again.'


class NotFound(BillingError):
    code = 'not_found'
    status_code = 404
    default_message = 'The requested record does not exist.'
