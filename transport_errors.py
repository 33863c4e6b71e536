"""
Transport Error Taxonomy
Typed failures raised by the transport helpers and rendered by the API layer
"""


class TransportError(Exception):
    """Base class for every failure the transport engine reports"""
    status_code = 400
    code = 'transport_error'

    def __init__(self, message, field=None, **context):
        self.message = message
        self.field = field
        self.context = context
        super().__init__(f"{field}: {message}" if field else message)

    def to_dict(self):
        return {
            'error': self.__class__.__name__,
            'code': self.code,
            'message': self.message,
            'field': self.field,
            'context': self.context,
        }


# ===== VALIDATION ERRORS =====
# Malformed input; rejected before any side effect

class ValidationError(TransportError):
    status_code = 400
    code = 'validation_error'


class MissingField(ValidationError):
    code = 'missing_field'

    def __init__(self, field, message="is required", **context):
        super().__init__(message, field=field, **context)


class InvalidValue(ValidationError):
    code = 'invalid_value'


class InvalidCoordinate(ValidationError):
    code = 'invalid_coordinate'


class InvalidSpeed(ValidationError):
    code = 'invalid_speed'


class InsufficientStops(ValidationError):
    code = 'insufficient_stops'


class ConstraintViolation(ValidationError):
    code = 'constraint_violation'


# ===== NOT FOUND ERRORS =====

class NotFoundError(TransportError):
    status_code = 404
    code = 'not_found'


class RouteNotFound(NotFoundError):
    code = 'route_not_found'

    def __init__(self, route_id, **context):
        super().__init__(f"Route {route_id} not found", route_id=route_id, **context)


class StopNotFound(NotFoundError):
    code = 'stop_not_found'

    def __init__(self, stop_id, field='stop_id', **context):
        super().__init__(f"Stop {stop_id} not found", field=field, stop_id=stop_id, **context)


class ResourceNotFound(NotFoundError):
    code = 'resource_not_found'

    def __init__(self, resource, resource_id, **context):
        super().__init__(f"{resource.capitalize()} {resource_id} not found",
                         resource=resource, resource_id=resource_id, **context)


class BindingNotFound(NotFoundError):
    code = 'binding_not_found'

    def __init__(self, transport_id, **context):
        super().__init__(f"Transport assignment {transport_id} not found",
                         transport_id=transport_id, **context)


# ===== CONFLICT ERRORS =====
# Retry only after the competing state has been resolved

class ConflictError(TransportError):
    status_code = 409
    code = 'conflict'


class DuplicateRouteCode(ConflictError):
    code = 'duplicate_route_code'

    def __init__(self, route_code, **context):
        super().__init__(f"Route code '{route_code}' already exists", field='route_code',
                         route_code=route_code, **context)


class DuplicateCode(ConflictError):
    code = 'duplicate_code'

    def __init__(self, field, value, **context):
        super().__init__(f"'{value}' already exists", field=field, value=value, **context)


class DuplicateActiveBinding(ConflictError):
    code = 'duplicate_active_binding'

    def __init__(self, student_id, **context):
        super().__init__(f"Student {student_id} already has an active transport assignment",
                         student_id=student_id, **context)


class ResourceAlreadyAssigned(ConflictError):
    code = 'resource_already_assigned'

    def __init__(self, resource, resource_id, route_id=None, **context):
        where = f" to route {route_id}" if route_id else ""
        super().__init__(f"{resource.capitalize()} {resource_id} is already assigned{where}",
                         resource=resource, resource_id=resource_id, assigned_route_id=route_id,
                         **context)


class AlreadyCancelled(ConflictError):
    code = 'already_cancelled'

    def __init__(self, transport_id, **context):
        super().__init__(f"Transport assignment {transport_id} is already cancelled",
                         transport_id=transport_id, **context)


class ConcurrentModification(ConflictError):
    code = 'concurrent_modification'


# ===== PRECONDITION ERRORS =====
# Currently illegal, may succeed once state changes

class PreconditionError(TransportError):
    status_code = 422
    code = 'precondition_failed'


class RouteNotOperable(PreconditionError):
    code = 'route_not_operable'

    def __init__(self, route_id, status, **context):
        super().__init__(f"Route {route_id} is not active (status: {status})",
                         route_id=route_id, status=status, **context)


class ResourceNotActive(PreconditionError):
    code = 'resource_not_active'

    def __init__(self, resource, resource_id, status, **context):
        super().__init__(f"{resource.capitalize()} {resource_id} is not active (status: {status})",
                         resource=resource, resource_id=resource_id, status=status, **context)


class RouteInUse(PreconditionError):
    code = 'route_in_use'


class StopInUse(PreconditionError):
    code = 'stop_in_use'


class ResourceInUse(PreconditionError):
    code = 'resource_in_use'


class RouteAtCapacity(PreconditionError):
    code = 'route_at_capacity'

    def __init__(self, route_id, capacity, **context):
        super().__init__(f"Route {route_id} is at capacity ({capacity})",
                         route_id=route_id, capacity=capacity, **context)


class ActiveBindingsOnRoute(PreconditionError):
    code = 'active_bindings_on_route'

    def __init__(self, route_id, count, **context):
        super().__init__(f"Route {route_id} still has {count} active student assignment(s)",
                         route_id=route_id, active_bindings=count, **context)


class BindingNotActive(PreconditionError):
    code = 'binding_not_active'

    def __init__(self, transport_id, status, **context):
        super().__init__(f"Transport assignment {transport_id} is not active (status: {status})",
                         transport_id=transport_id, status=status, **context)
