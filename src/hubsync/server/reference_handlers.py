"""Minimal in-memory controller: handlers for every command kind.

State layout::

    {
      "lights": {"<ieee>": {"name": str, "lightState": {"on", "brightness", "color"}}},
      "groups": {"<id>": {"name": str, "lightIds": [ieee...],
                          "scenes": {"<id>": {"name": str, "states": {ieee: lightState}}}}},
      "permitJoin": bool,
      "config": {"allowRemote": bool, "users": {"<name>": {...user, "_secret": str}}},
    }

Admins may do anything. Other users may only drive lights, groups and scenes
that belong to their allowed groups.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from hubsync.protocol.commands import (
    GroupSet,
    LightSet,
    LightState,
    PermitJoin,
    SceneRecall,
    SetRemoteAccess,
    UserAdd,
    UserDelete,
    UserUpdate,
)
from hubsync.server.command_registry import CommandRegistry, CommandRejected, register_command
from hubsync.server.sessions import PERMISSION_DENIED, HandlerContext

logger = logging.getLogger(__name__)


def _lights(ctx: HandlerContext) -> Dict[str, Any]:
    return ctx.state.setdefault("lights", {})


def _group(ctx: HandlerContext, group_id: int) -> Dict[str, Any]:
    group = ctx.state.get("groups", {}).get(str(group_id))
    if not isinstance(group, dict):
        raise CommandRejected(f"Unknown group {group_id}", code="command.not_found")
    return group


def _require_group(ctx: HandlerContext, group_id: int) -> None:
    if not ctx.identity.may_control_group(group_id):
        raise CommandRejected(PERMISSION_DENIED, code="command.forbidden")


def _apply_light_state(light: Dict[str, Any], state: Dict[str, Any]) -> None:
    current = light.setdefault("lightState", {})
    for key, value in state.items():
        if value is not None:
            current[key] = value


def _groups_containing(ctx: HandlerContext, ieee: str) -> list:
    found = []
    for key, group in (ctx.state.get("groups") or {}).items():
        if isinstance(group, dict) and ieee in (group.get("lightIds") or ()):
            found.append(int(key))
    return found


async def handle_light_set(ctx: HandlerContext, command: LightSet) -> None:
    light = _lights(ctx).get(command.ieee)
    if not isinstance(light, dict):
        raise CommandRejected(f"Unknown light {command.ieee}", code="command.not_found")
    if not ctx.identity.is_admin and not any(
        ctx.identity.may_control_group(gid) for gid in _groups_containing(ctx, command.ieee)
    ):
        raise CommandRejected(PERMISSION_DENIED, code="command.forbidden")
    _apply_light_state(light, command.state.to_dict())
    ctx.mark_changed()


async def handle_group_set(ctx: HandlerContext, command: GroupSet) -> None:
    group = _group(ctx, command.group_id)
    _require_group(ctx, command.group_id)
    lights = _lights(ctx)
    state = command.state.to_dict()
    for ieee in group.get("lightIds") or ():
        light = lights.get(ieee)
        if isinstance(light, dict):
            _apply_light_state(light, state)
    ctx.mark_changed()


async def handle_scene_recall(ctx: HandlerContext, command: SceneRecall) -> None:
    group = _group(ctx, command.group_id)
    _require_group(ctx, command.group_id)
    scene = (group.get("scenes") or {}).get(str(command.scene_id))
    if not isinstance(scene, dict):
        raise CommandRejected(f"Unknown scene {command.scene_id}", code="command.not_found")
    lights = _lights(ctx)
    for ieee, state in (scene.get("states") or {}).items():
        light = lights.get(ieee)
        if isinstance(light, dict):
            _apply_light_state(light, LightState.from_dict(state).to_dict())
    ctx.mark_changed()


def _users(ctx: HandlerContext) -> Dict[str, Any]:
    config = ctx.state.setdefault("config", {})
    return config.setdefault("users", {})


async def handle_user_add(ctx: HandlerContext, command: UserAdd) -> None:
    users = _users(ctx)
    if command.user_name in users:
        raise CommandRejected(f"User '{command.user_name}' already exists", code="command.conflict")
    users[command.user_name] = {
        "isAdmin": command.is_admin,
        "allowedGroupIds": sorted(command.allowed_group_ids),
        "allowRemote": command.allow_remote,
        "_secret": command.secret,
    }
    logger.info("user %s added by %s", command.user_name, ctx.identity.user_name)
    ctx.users_changed()


async def handle_user_update(ctx: HandlerContext, command: UserUpdate) -> None:
    record = _users(ctx).get(command.user_name)
    if not isinstance(record, dict):
        raise CommandRejected(f"Unknown user '{command.user_name}'", code="command.not_found")
    if command.is_admin is not None:
        if not command.is_admin and command.user_name == ctx.identity.user_name:
            raise CommandRejected("You cannot remove your own admin rights", code="command.invalid")
        record["isAdmin"] = command.is_admin
    if command.allowed_group_ids is not None:
        record["allowedGroupIds"] = sorted(command.allowed_group_ids)
    if command.allow_remote is not None:
        record["allowRemote"] = command.allow_remote
    if command.secret:
        record["_secret"] = command.secret
    ctx.users_changed()


async def handle_user_delete(ctx: HandlerContext, command: UserDelete) -> None:
    users = _users(ctx)
    if command.user_name not in users:
        raise CommandRejected(f"Unknown user '{command.user_name}'", code="command.not_found")
    if command.user_name == ctx.identity.user_name:
        raise CommandRejected("You cannot delete yourself", code="command.invalid")
    del users[command.user_name]
    logger.info("user %s deleted by %s", command.user_name, ctx.identity.user_name)
    ctx.users_changed()


async def handle_set_remote_access(ctx: HandlerContext, command: SetRemoteAccess) -> Dict[str, bool]:
    ctx.state.setdefault("config", {})["allowRemote"] = command.enabled
    ctx.mark_changed()
    return {"allowRemote": command.enabled}


async def handle_permit_join(ctx: HandlerContext, command: PermitJoin) -> None:
    ctx.state["permitJoin"] = command.enabled
    ctx.mark_changed()


def install_reference_handlers(registry: CommandRegistry) -> CommandRegistry:
    register_command(registry, LightSet.name, handle_light_set)
    register_command(registry, GroupSet.name, handle_group_set)
    register_command(registry, SceneRecall.name, handle_scene_recall)
    register_command(registry, UserAdd.name, handle_user_add, admin_only=True)
    register_command(registry, UserUpdate.name, handle_user_update, admin_only=True)
    register_command(registry, UserDelete.name, handle_user_delete, admin_only=True)
    register_command(registry, SetRemoteAccess.name, handle_set_remote_access, admin_only=True)
    register_command(registry, PermitJoin.name, handle_permit_join, admin_only=True)
    return registry


def demo_state(allow_remote: bool = False, users: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """A small house: two lights in a living-room group with one scene."""

    return {
        "lights": {
            "0x0001": {"name": "Ceiling", "lightState": {"on": False, "brightness": 200}},
            "0x0002": {"name": "Floor lamp", "lightState": {"on": False, "brightness": 120}},
        },
        "groups": {
            "1": {
                "name": "Living room",
                "lightIds": ["0x0001", "0x0002"],
                "scenes": {
                    "1": {
                        "name": "Evening",
                        "states": {
                            "0x0001": {"on": True, "brightness": 80},
                            "0x0002": {"on": True, "brightness": 40},
                        },
                    }
                },
            }
        },
        "permitJoin": False,
        "config": {"allowRemote": allow_remote, "users": dict(users or {})},
    }


__all__ = [
    "demo_state",
    "handle_group_set",
    "handle_light_set",
    "handle_permit_join",
    "handle_scene_recall",
    "handle_set_remote_access",
    "handle_user_add",
    "handle_user_delete",
    "handle_user_update",
    "install_reference_handlers",
]
