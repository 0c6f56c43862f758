from typing import Any, Callable, TypeVar

from fastapi import Request

U = TypeVar("U")
EndPointFunc = Callable[..., Any]
KeyFunc = Callable[[Request], str]
