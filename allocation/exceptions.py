"""
Errors raised by the allocation engine and the DRF handler that renders them.

Every error is an :class:`rest_framework.exceptions.APIException` so the
HTTP layer calling the coordinator maps it to a stable status code
without a translation table.  Business-rule errors are never retryable;
only :class:`TransientPersistenceError` is.
"""
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler


class AllocationError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Allocation request failed.'
    default_code = 'allocation_error'
    retryable = False


class NotFound(AllocationError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Referenced record does not exist.'
    default_code = 'not_found'

    def __init__(self, entity: str, pk):
        self.entity = entity
        self.pk = pk
        super().__init__(f'{entity} with ID {pk} not found')


class InvalidState(AllocationError):
    default_detail = 'Record is not in a state that allows this operation.'
    default_code = 'invalid_state'


class InvalidTransition(InvalidState):
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f'{entity} cannot move from {current} to {target}')


class Conflict(AllocationError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Operation conflicts with an existing record.'
    default_code = 'conflict'


class ValidationError(AllocationError):
    default_detail = 'Invalid or missing field.'
    default_code = 'validation_error'

    def __init__(self, detail=None, field: str = ''):
        self.field = field
        super().__init__(detail)


class TransientPersistenceError(AllocationError):
    """Lock timeout, deadlock or lost connection; the caller may retry."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Temporary database failure, please retry.'
    default_code = 'transient_failure'
    retryable = True


def api_exception_handler(exc, context):
    resp = drf_exception_handler(exc, context)
    if resp is None:
        return Response(
            {'ok': False, 'error': {'code': 'server_error', 'message': str(exc), 'retryable': False}},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    if isinstance(exc, AllocationError):
        code = exc.default_code
        message = str(exc.detail)
    else:
        code = 'api_error'
        if isinstance(resp.data, dict):
            message = resp.data.get('detail') or resp.data
        else:
            message = str(resp.data)
    return Response(
        {'ok': False, 'error': {'code': code, 'message': message, 'retryable': getattr(exc, 'retryable', False)}},
        status=resp.status_code,
    )
