from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class ProvisorError(Exception):
    """Represent a base class for all provisor-specific failures.

    Catch this type when you want to handle any provisor error path without
    matching each concrete exception class individually.
    """


class InvalidRegistrationError(ProvisorError):
    """Signal invalid registration or configuration of a service.

    Raised while adding classes or descriptors to a ``DynamicConfiguration``,
    for example when a class cannot be instantiated through its constructor,
    or when a provider member is declared with an invalid combination of
    markers.
    """


class DisposeMethodNotFoundError(InvalidRegistrationError):
    """Signal that a declared dispose method does not exist.

    Raised at registration time when ``@provides(dispose_method=...)`` names a
    method that cannot be found with the signature required by
    ``disposal_handled_by``.

    Typical fixes include correcting the method name, or, for
    ``DisposalHandledBy.PROVIDER``, making sure the dispose method accepts a
    single parameter whose type is a supertype of the provided type and has
    the same static-ness as the provider member.
    """


class UnsatisfiedDependencyError(ProvisorError):
    """Signal that a required injection point has no matching service.

    Raised while resolving parameters of constructors, provider members and
    subscriber methods. Parameters with a default value are optional and never
    trigger this error.
    """

    def __init__(self, injectee: Any) -> None:
        self.injectee = injectee
        super().__init__(f"There is no service matching {injectee!r}")


class ServiceNotFoundError(ProvisorError, LookupError):
    """Signal that no registered service matches a requested type.

    Raised by ``Services.get_service`` when there is no matching service, or
    when the matching service was provided as ``None``.
    """


class LocatorShutdownError(ProvisorError):
    """Signal use of a service locator after ``shutdown()``."""


class MultiError(ProvisorError):
    """Aggregate one or more failures raised while creating or disposing services.

    Failures thrown from provider members, constructors and dispose methods
    reach the caller wrapped in this type. The individual causes are kept in
    ``errors`` and the first one is chained as ``__cause__``.
    """

    def __init__(self, errors: Iterable[BaseException], message: str | None = None) -> None:
        self.errors: tuple[BaseException, ...] = tuple(errors)
        if message is None:
            message = "; ".join(f"{type(error).__name__}: {error}" for error in self.errors)
        super().__init__(message)
        if self.errors:
            self.__cause__ = self.errors[0]
