"""Closed set of command kinds a client may send to the controller.

Each kind is a frozen dataclass that knows its wire name, how to encode and
decode its positional arguments, which logical target a prediction for it
belongs to, and how to decode its result. Decoding an unknown name raises
``UnknownCommand`` at the transport boundary instead of deep inside a handler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from numbers import Integral, Real
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from hubsync.errors import ProtocolError, UnknownCommand


def _strip_none(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {key: val for key, val in obj.items() if val is not None}


def _expect_str(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"{what} must be a non-empty string")
    return value


def _expect_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise ProtocolError(f"{what} must be an integer")
    return int(value)


def _expect_bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ProtocolError(f"{what} must be a boolean")
    return value


def _optional_float(value: Any, what: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ProtocolError(f"{what} must be a number")
    return float(value)


def _expect_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ProtocolError(f"{what} must be an object")
    return value


def _arg(args: Sequence[Any], index: int) -> Any:
    return args[index] if len(args) > index else None


@dataclass(frozen=True)
class LightState:
    """Requested light state; unset fields are left untouched by the controller."""

    on: Optional[bool] = None
    brightness: Optional[int] = None
    color: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return _strip_none({"on": self.on, "brightness": self.brightness, "color": self.color})

    @classmethod
    def from_dict(cls, data: Any) -> "LightState":
        data = _expect_mapping(data, "light state")
        on = data.get("on")
        if on is not None:
            on = _expect_bool(on, "light state 'on'")
        brightness = data.get("brightness")
        if brightness is not None:
            brightness = _expect_int(brightness, "light state 'brightness'")
        return cls(on=on, brightness=brightness, color=data.get("color"))


class Command:
    """Base class for command kinds."""

    name: ClassVar[str] = ""

    def to_args(self) -> List[Any]:
        raise NotImplementedError

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "Command":
        raise NotImplementedError

    def prediction_target(self) -> str:
        raise NotImplementedError

    def decode_result(self, result: Any) -> Any:
        return result

    def to_payload(self) -> List[Any]:
        return [self.name, *self.to_args()]


COMMAND_KINDS: Dict[str, Type[Command]] = {}


def command_kind(cls: Type[Command]) -> Type[Command]:
    name = cls.name
    if not name:
        raise ValueError(f"{cls.__name__} has no wire name")
    if name in COMMAND_KINDS:
        raise ValueError(f"command kind '{name}' already registered")
    COMMAND_KINDS[name] = cls
    return cls


@command_kind
@dataclass(frozen=True)
class LightSet(Command):
    name: ClassVar[str] = "light.set"

    ieee: str
    state: LightState
    transition: Optional[float] = None

    def to_args(self) -> List[Any]:
        args: List[Any] = [self.ieee, self.state.to_dict()]
        if self.transition is not None:
            args.append(self.transition)
        return args

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "LightSet":
        return cls(
            ieee=_expect_str(_arg(args, 0), "light ieee address"),
            state=LightState.from_dict(_arg(args, 1)),
            transition=_optional_float(_arg(args, 2), "transition"),
        )

    def prediction_target(self) -> str:
        return f"light:{self.ieee}"


@command_kind
@dataclass(frozen=True)
class GroupSet(Command):
    name: ClassVar[str] = "group.set"

    group_id: int
    state: LightState
    transition: Optional[float] = None

    def to_args(self) -> List[Any]:
        args: List[Any] = [self.group_id, self.state.to_dict()]
        if self.transition is not None:
            args.append(self.transition)
        return args

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "GroupSet":
        return cls(
            group_id=_expect_int(_arg(args, 0), "group id"),
            state=LightState.from_dict(_arg(args, 1)),
            transition=_optional_float(_arg(args, 2), "transition"),
        )

    def prediction_target(self) -> str:
        return f"group:{self.group_id}"


@command_kind
@dataclass(frozen=True)
class SceneRecall(Command):
    name: ClassVar[str] = "scene.recall"

    group_id: int
    scene_id: int
    transition: Optional[float] = None

    def to_args(self) -> List[Any]:
        args: List[Any] = [self.group_id, self.scene_id]
        if self.transition is not None:
            args.append(self.transition)
        return args

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "SceneRecall":
        return cls(
            group_id=_expect_int(_arg(args, 0), "group id"),
            scene_id=_expect_int(_arg(args, 1), "scene id"),
            transition=_optional_float(_arg(args, 2), "transition"),
        )

    def prediction_target(self) -> str:
        return f"group:{self.group_id}"


@command_kind
@dataclass(frozen=True)
class UserAdd(Command):
    name: ClassVar[str] = "user.add"

    user_name: str
    secret: str
    is_admin: bool = False
    allowed_group_ids: Tuple[int, ...] = field(default_factory=tuple)
    allow_remote: bool = False

    def to_args(self) -> List[Any]:
        return [
            {
                "name": self.user_name,
                "secret": self.secret,
                "isAdmin": self.is_admin,
                "allowedGroupIds": list(self.allowed_group_ids),
                "allowRemote": self.allow_remote,
            }
        ]

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "UserAdd":
        data = _expect_mapping(_arg(args, 0), "user")
        return cls(
            user_name=_expect_str(data.get("name"), "user name"),
            secret=_expect_str(data.get("secret"), "user secret"),
            is_admin=bool(data.get("isAdmin", False)),
            allowed_group_ids=tuple(_expect_int(g, "group id") for g in data.get("allowedGroupIds") or ()),
            allow_remote=bool(data.get("allowRemote", False)),
        )

    def prediction_target(self) -> str:
        return f"user:{self.user_name}"


@command_kind
@dataclass(frozen=True)
class UserUpdate(Command):
    name: ClassVar[str] = "user.update"

    user_name: str
    secret: Optional[str] = None
    is_admin: Optional[bool] = None
    allowed_group_ids: Optional[Tuple[int, ...]] = None
    allow_remote: Optional[bool] = None

    def to_args(self) -> List[Any]:
        groups = list(self.allowed_group_ids) if self.allowed_group_ids is not None else None
        return [
            _strip_none(
                {
                    "name": self.user_name,
                    "secret": self.secret,
                    "isAdmin": self.is_admin,
                    "allowedGroupIds": groups,
                    "allowRemote": self.allow_remote,
                }
            )
        ]

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "UserUpdate":
        data = _expect_mapping(_arg(args, 0), "user")
        groups = data.get("allowedGroupIds")
        is_admin = data.get("isAdmin")
        allow_remote = data.get("allowRemote")
        return cls(
            user_name=_expect_str(data.get("name"), "user name"),
            secret=data.get("secret") or None,
            is_admin=None if is_admin is None else _expect_bool(is_admin, "isAdmin"),
            allowed_group_ids=None if groups is None else tuple(_expect_int(g, "group id") for g in groups),
            allow_remote=None if allow_remote is None else _expect_bool(allow_remote, "allowRemote"),
        )

    def prediction_target(self) -> str:
        return f"user:{self.user_name}"


@command_kind
@dataclass(frozen=True)
class UserDelete(Command):
    name: ClassVar[str] = "user.delete"

    user_name: str

    def to_args(self) -> List[Any]:
        return [self.user_name]

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "UserDelete":
        return cls(user_name=_expect_str(_arg(args, 0), "user name"))

    def prediction_target(self) -> str:
        return f"user:{self.user_name}"


@command_kind
@dataclass(frozen=True)
class SetRemoteAccess(Command):
    name: ClassVar[str] = "config.set_remote_access"

    enabled: bool

    def to_args(self) -> List[Any]:
        return [self.enabled]

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "SetRemoteAccess":
        return cls(enabled=_expect_bool(_arg(args, 0), "enabled"))

    def prediction_target(self) -> str:
        return "config"

    def decode_result(self, result: Any) -> bool:
        if isinstance(result, Mapping):
            return bool(result.get("allowRemote"))
        return bool(self.enabled)


@command_kind
@dataclass(frozen=True)
class PermitJoin(Command):
    name: ClassVar[str] = "bridge.permit_join"

    enabled: bool

    def to_args(self) -> List[Any]:
        return [self.enabled]

    @classmethod
    def from_args(cls, args: Sequence[Any]) -> "PermitJoin":
        return cls(enabled=_expect_bool(_arg(args, 0), "enabled"))

    def prediction_target(self) -> str:
        return "permitJoin"


def decode_command(name: str, args: Sequence[Any]) -> Command:
    """Build the typed command for a request, validating its arguments."""

    kind = COMMAND_KINDS.get(name)
    if kind is None:
        raise UnknownCommand(name)
    return kind.from_args(list(args))


__all__ = [
    "COMMAND_KINDS",
    "Command",
    "GroupSet",
    "LightSet",
    "LightState",
    "PermitJoin",
    "SceneRecall",
    "SetRemoteAccess",
    "UserAdd",
    "UserDelete",
    "UserUpdate",
    "command_kind",
    "decode_command",
]
