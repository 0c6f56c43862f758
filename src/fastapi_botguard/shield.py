from functools import wraps
from inspect import Signature, signature
from typing import Generic, Optional

from fastapi import HTTPException, Response, status

from fastapi_botguard.consts import IS_SHIELDED_ENDPOINT_KEY
from fastapi_botguard.typing import EndPointFunc, U
from fastapi_botguard.utils import (
    is_coroutine_callable,
    merge_dedup_seq_params,
    prepend_request_to_signature_params_of_function,
    rearrange_params,
)


class Shield(Generic[U]):
    __slots__ = (
        "auto_error",
        "name",
        "_guard_func",
        "_guard_func_is_async",
        "_guard_func_params",
        "_exception_to_raise_if_fail",
        "_default_response_to_return_if_fail",
        "__weakref__",
    )

    def __init__(
        self,
        shield_func: U,
        *,
        name: str = None,
        auto_error: bool = True,
        exception_to_raise_if_fail: Optional[HTTPException] = None,
        default_response_to_return_if_fail: Optional[Response] = None,
    ):
        assert callable(shield_func), "`shield_func` must be callable"
        self._guard_func = shield_func
        self._guard_func_is_async = is_coroutine_callable(shield_func)
        self._guard_func_params = signature(shield_func).parameters
        self.name = name or "unknown"
        self._exception_to_raise_if_fail = exception_to_raise_if_fail or HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Shield with name `{self.name}` blocks the request",
        )
        assert isinstance(self._exception_to_raise_if_fail, HTTPException), (
            "`exception_to_raise_if_fail` must be an instance of `HTTPException`"
        )
        self._default_response_to_return_if_fail = (
            default_response_to_return_if_fail
            or Response(
                content=f"Shield with name `{self.name}` blocks the request",
                status_code=status.HTTP_403_FORBIDDEN,
            )
        )
        self.auto_error = auto_error

    def _raise_or_return_default_response(self):
        if self.auto_error:
            raise self._exception_to_raise_if_fail
        else:
            return self._default_response_to_return_if_fail

    def __call__(self, endpoint: EndPointFunc) -> EndPointFunc:
        assert callable(endpoint), "`endpoint` must be callable"

        endpoint_params = signature(endpoint).parameters
        endpoint_is_async = is_coroutine_callable(endpoint)

        @wraps(endpoint)
        async def wrapper(*args, **kwargs):
            guard_func_args = {
                k: v for k, v in kwargs.items() if k in self._guard_func_params
            }
            if self._guard_func_is_async:
                obj = await self._guard_func(**guard_func_args)
            else:
                obj = self._guard_func(**guard_func_args)
            if not obj:
                return self._raise_or_return_default_response()

            endpoint_kwargs = {k: v for k, v in kwargs.items() if k in endpoint_params}
            if endpoint_is_async:
                return await endpoint(*args, **endpoint_kwargs)
            return endpoint(*args, **endpoint_kwargs)

        # FastAPI solves guard and endpoint parameters in one pass
        wrapper.__signature__ = Signature(
            list(
                rearrange_params(
                    merge_dedup_seq_params(
                        prepend_request_to_signature_params_of_function(self._guard_func),
                        endpoint_params.values(),
                    )
                )
            )
        )
        # FastAPI has to see the async wrapper, never the endpoint behind it
        del wrapper.__wrapped__
        setattr(wrapper, IS_SHIELDED_ENDPOINT_KEY, True)
        setattr(wrapper, "__endpoint_params__", endpoint_params)
        return wrapper


def shield(
    shield_func: Optional[U] = None,
    /,
    name: str = None,
    auto_error: bool = True,
    exception_to_raise_if_fail: Optional[HTTPException] = None,
    default_response_to_return_if_fail: Optional[Response] = None,
) -> Shield[U]:
    if shield_func is None:
        return lambda shield_func: shield(
            shield_func,
            name=name,
            auto_error=auto_error,
            exception_to_raise_if_fail=exception_to_raise_if_fail,
            default_response_to_return_if_fail=default_response_to_return_if_fail,
        )
    return Shield(
        shield_func,
        name=name,
        auto_error=auto_error,
        exception_to_raise_if_fail=exception_to_raise_if_fail,
        default_response_to_return_if_fail=default_response_to_return_if_fail,
    )
