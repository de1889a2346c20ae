"""
WhatsApp Flows
==============
Three Flows are published to the platform: onboarding, login and data
purchase. This module holds

- FLOW_DEFINITIONS: the Flow JSON we publish, screen by screen
- check_initial_screens(): the startup self-test that every invitation's
  initial screen is the first screen of the published definition
- FlowEndpoint: the data-exchange endpoint behind POST /flow (already
  decrypted requests in, plain responses out)
- FlowSubmissionHandler: what happens when a completed Flow comes back
  through the webhook

Screen inputs collected before completion are kept in the session store
under the Flow's feature namespace, keyed by user, so secrets (BVN, PIN)
never travel in the completion payload.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from miimii.context import AppContext
from miimii.errors import (
    AuthenticationFailed, FlowTokenExpired, FlowTokenNotFound, InvalidInput, InvalidPhoneNumber,
    PinLocked, ProviderUnavailable,
)
from miimii.handlers.base import Done, Outcome, Turn
from miimii.handlers.data import DATA_FIRST_SCREEN, DataHandler
from miimii.handlers.onboarding import (
    ONBOARDING_FIRST_SCREEN, OnboardingHandler, parse_date_of_birth, validate_profile,
)
from miimii.messages import FlowInvitation
from miimii.models import FlowSession, FlowType, User, format_naira
from miimii.phone import normalize, to_local
from miimii.pin import hash_pin, validate_new_pin
from miimii.providers.bilal import NETWORKS
from miimii.session_store import Namespace, session_key

logger = logging.getLogger(__name__)

LOGIN_FIRST_SCREEN = "LOGIN_PIN_SCREEN"
SUCCESS_SCREEN = "SUCCESS"
SCRATCH_TTL_SECONDS = 30 * 60
# Set by the data-exchange endpoint only; never taken from a completion payload.
SERVER_ONLY_FIELDS = frozenset({"verified", "pin_verified", "pin_hash"})
LOGIN_SESSION_TTL_SECONDS = 24 * 60 * 60

INITIAL_SCREENS = {
    FlowType.ONBOARDING.value: ONBOARDING_FIRST_SCREEN,
    FlowType.LOGIN.value: LOGIN_FIRST_SCREEN,
    FlowType.DATA_PURCHASE.value: DATA_FIRST_SCREEN,
}

_SCRATCH_NAMESPACE = {
    FlowType.ONBOARDING.value: Namespace.ONBOARDING,
    FlowType.LOGIN.value: Namespace.LOGIN,
    FlowType.DATA_PURCHASE.value: Namespace.DATA_PURCHASE,
}


# ============================================================================
# PUBLISHED FLOW JSON
# ============================================================================

def _text_input(name: str, label: str, input_type: str = "text", required: bool = True, **extra) -> Dict[str, Any]:
    field = {"type": "TextInput", "name": name, "label": label, "input-type": input_type, "required": required}
    field.update(extra)
    return field


def _options(name: str, label: str, source: str) -> Dict[str, Any]:
    return {"type": "RadioButtonsGroup", "name": name, "label": label, "required": True, "data-source": source}


def _screen(screen_id: str, title: str, children: List[Dict[str, Any]], payload: Dict[str, str],
            data: Dict[str, Any] = None, terminal: bool = False, cta: str = "Continue") -> Dict[str, Any]:
    error = {"type": "TextBody", "text": "${data.error_message}", "visible": "${data.has_error}"}
    footer = {
        "type": "Footer",
        "label": cta,
        "on-click-action": {"name": "data_exchange", "payload": payload},
    }
    schema = {
        "error_message": {"type": "string", "__example__": ""},
        "has_error": {"type": "boolean", "__example__": False},
    }
    schema.update(data or {})
    screen = {
        "id": screen_id,
        "title": title,
        "data": schema,
        "layout": {
            "type": "SingleColumnLayout",
            "children": [{"type": "Form", "name": "form", "children": [error] + children + [footer]}],
        },
    }
    if terminal:
        screen["terminal"] = True
    return screen


def _form(*names: str) -> Dict[str, str]:
    return {name: f"${{form.{name}}}" for name in names}


_OPTION_LIST = {
    "type": "array",
    "items": {"type": "object", "properties": {"id": {"type": "string"}, "title": {"type": "string"}}},
    "__example__": [],
}

FLOW_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    FlowType.ONBOARDING.value: {
        "version": "6.0",
        "data_api_version": "3.0",
        "routing_model": {"QUESTION_ONE": ["BVN_SCREEN"], "BVN_SCREEN": ["PIN_SCREEN"], "PIN_SCREEN": []},
        "screens": [
            _screen("QUESTION_ONE", "Personal details", [
                _text_input("first_name", "First name"),
                _text_input("middle_name", "Middle name", required=False),
                _text_input("last_name", "Last name"),
                {"type": "DatePicker", "name": "date_of_birth", "label": "Date of birth", "required": True},
                {"type": "Dropdown", "name": "gender", "label": "Gender", "required": True,
                 "data-source": [{"id": "male", "title": "Male"}, {"id": "female", "title": "Female"}]},
                _text_input("address", "Home address", required=False),
            ], _form("first_name", "middle_name", "last_name", "date_of_birth", "gender", "address")),
            _screen("BVN_SCREEN", "Verify your identity", [
                {"type": "TextBody", "text": "Your BVN is used to verify your identity with our partner bank."},
                _text_input("bvn", "BVN (11 digits)", input_type="number", **{"min-chars": 11, "max-chars": 11}),
            ], _form("bvn")),
            _screen("PIN_SCREEN", "Create your PIN", [
                _text_input("pin", "4-digit PIN", input_type="password", **{"min-chars": 4, "max-chars": 4}),
                _text_input("confirm_pin", "Confirm PIN", input_type="password", **{"min-chars": 4, "max-chars": 4}),
            ], _form("pin", "confirm_pin"), terminal=True, cta="Open account"),
        ],
    },
    FlowType.LOGIN.value: {
        "version": "6.0",
        "data_api_version": "3.0",
        "routing_model": {"LOGIN_PIN_SCREEN": []},
        "screens": [
            _screen("LOGIN_PIN_SCREEN", "Log in to MiiMii", [
                {"type": "TextBody", "text": "${data.greeting}"},
                _text_input("pin", "Transaction PIN", input_type="password", **{"min-chars": 4, "max-chars": 4}),
            ], _form("pin"), data={"greeting": {"type": "string", "__example__": "Welcome back"}},
                terminal=True, cta="Log in"),
        ],
    },
    FlowType.DATA_PURCHASE.value: {
        "version": "6.0",
        "data_api_version": "3.0",
        "routing_model": {
            "NETWORK_SELECTION_SCREEN": ["PHONE_INPUT_SCREEN"],
            "PHONE_INPUT_SCREEN": ["DATA_PLAN_SELECTION_SCREEN"],
            "DATA_PLAN_SELECTION_SCREEN": ["PIN_VERIFICATION_SCREEN"],
            "PIN_VERIFICATION_SCREEN": [],
        },
        "screens": [
            _screen("NETWORK_SELECTION_SCREEN", "Choose network", [
                _options("network", "Network", "${data.networks}"),
            ], _form("network"), data={"networks": _OPTION_LIST}),
            _screen("PHONE_INPUT_SCREEN", "Phone number", [
                _text_input("phone", "Phone number", input_type="phone", **{"init-value": "${data.phone}"}),
            ], _form("phone"), data={"phone": {"type": "string", "__example__": "08012345678"}}),
            _screen("DATA_PLAN_SELECTION_SCREEN", "Choose a plan", [
                _options("plan_id", "Data plan", "${data.plans}"),
            ], _form("plan_id"), data={"plans": _OPTION_LIST}),
            _screen("PIN_VERIFICATION_SCREEN", "Confirm purchase", [
                {"type": "TextBody", "text": "${data.summary}"},
                _text_input("pin", "Transaction PIN", input_type="password", **{"min-chars": 4, "max-chars": 4}),
            ], _form("pin"), data={"summary": {"type": "string", "__example__": "MTN 1GB for 08012345678"}},
                terminal=True, cta="Buy data"),
        ],
    },
}


def screen_order(flow_type: str) -> List[str]:
    return [screen["id"] for screen in FLOW_DEFINITIONS[flow_type]["screens"]]


def check_initial_screens() -> List[str]:
    """Problems found; an empty list means every invitation opens on the right screen."""
    problems = []
    for flow_type, initial in INITIAL_SCREENS.items():
        definition = FLOW_DEFINITIONS.get(flow_type)
        if not definition or not definition.get("screens"):
            problems.append(f"{flow_type}: no published definition")
            continue
        first = definition["screens"][0]["id"]
        if first != initial:
            problems.append(f"{flow_type}: invitations open {initial!r} but the first screen is {first!r}")
    return problems


def send_login_invitation(ctx: AppContext, turn: Turn) -> bool:
    flow_id = ctx.settings.flow_id(FlowType.LOGIN.value)
    if not flow_id:
        logger.error("Login required but FLOW_LOGIN_ID is not configured")
        return False
    token = ctx.flow_tokens.mint(turn.user.id, FlowType.LOGIN.value, turn.phone, LOGIN_FIRST_SCREEN)
    ctx.notifier.send(turn.phone, FlowInvitation(
        flow_id=flow_id,
        flow_token=token,
        body="🔐 Please log in with your PIN to continue.",
        cta="Log in",
        initial_screen=LOGIN_FIRST_SCREEN,
        header="MiiMii",
    ))
    return True


def has_login_session(ctx: AppContext, user: User) -> bool:
    return ctx.sessions.get(session_key(Namespace.LOGIN, user.id)) is not None


def scratch_key(flow_type: str, user_id: str) -> str:
    return session_key(_SCRATCH_NAMESPACE[flow_type], user_id, "flow")


# ============================================================================
# DATA EXCHANGE ENDPOINT
# ============================================================================

class FlowEndpoint:
    """Answers decrypted Flow data-exchange requests."""

    def __init__(self, ctx: AppContext):
        self.ctx = ctx
        self._exchange: Dict[str, Callable] = {
            "QUESTION_ONE": self._personal_details,
            "BVN_SCREEN": self._bvn,
            "PIN_SCREEN": self._new_pin,
            "LOGIN_PIN_SCREEN": self._login_pin,
            "NETWORK_SELECTION_SCREEN": self._network,
            "PHONE_INPUT_SCREEN": self._phone,
            "DATA_PLAN_SELECTION_SCREEN": self._plan,
            "PIN_VERIFICATION_SCREEN": self._purchase_pin,
        }

    def handle(self, request: Dict[str, Any]) -> Dict[str, Any]:
        action = str(request.get("action", "")).lower()
        if action == "ping":
            return {"data": {"status": "active"}}

        data = request.get("data") or {}
        if data.get("error"):
            logger.warning(f"Flow client reported an error: {data.get('error')} {data.get('error_message', '')}")
            return {"data": {"acknowledged": True}}

        screen = request.get("screen") or ""
        try:
            session = self.ctx.flow_tokens.bind(request.get("flow_token", ""))
        except (FlowTokenNotFound, FlowTokenExpired) as e:
            logger.info(f"Flow request with unusable token on {screen or action}: {type(e).__name__}")
            return _error(screen, e.user_message)

        user = self.ctx.users.get(session.user_id)
        if user is None:
            return _error(screen, FlowTokenNotFound.user_message)

        if action == "init":
            return self._render(session, user, session.initial_screen or INITIAL_SCREENS[session.flow_type])
        if action == "back":
            order = screen_order(session.flow_type)
            previous = order[max(order.index(screen) - 1, 0)] if screen in order else order[0]
            return self._render(session, user, previous)
        if action == "data_exchange":
            handler = self._exchange.get(screen)
            if handler is None or screen not in screen_order(session.flow_type):
                logger.warning(f"Flow {session.flow_type} has no screen {screen!r}")
                return _error(screen, "This screen is not available. Please start again.")
            return handler(session, user, data)

        logger.warning(f"Unknown Flow action {action!r}")
        return _error(screen, "Unsupported request.")

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _render(self, session: FlowSession, user: User, screen: str, **data: Any) -> Dict[str, Any]:
        scratch = self._scratch(session)
        if screen == "LOGIN_PIN_SCREEN":
            data.setdefault("greeting", f"Welcome back, {user.greeting_name}.")
        elif screen == "NETWORK_SELECTION_SCREEN":
            data.setdefault("networks", [{"id": name, "title": name} for name in NETWORKS])
        elif screen == "PHONE_INPUT_SCREEN":
            data.setdefault("phone", scratch.get("phone") or to_local(user.phone))
        elif screen == "DATA_PLAN_SELECTION_SCREEN":
            data.setdefault("plans", [
                {"id": str(plan.id), "title": f"{plan.data_size} {plan.plan_type} - {format_naira(plan.selling_price)}",
                 "description": plan.validity}
                for plan in self.ctx.plans.list_by_network(scratch.get("network", ""))
            ])
        elif screen == "PIN_VERIFICATION_SCREEN":
            plan = self.ctx.plans.get(scratch.get("plan_id"))
            if plan is not None:
                data.setdefault("summary", f"{plan.title} ({plan.validity}) for {scratch.get('phone')}: "
                                           f"{format_naira(plan.selling_price)}")
        data.setdefault("has_error", bool(data.get("error_message")))
        return {"screen": screen, "data": data}

    def _complete(self, session: FlowSession, **params: Any) -> Dict[str, Any]:
        params["flow_token"] = session.flow_token
        return {"screen": SUCCESS_SCREEN, "data": {"extension_message_response": {"params": params}}}

    def _scratch(self, session: FlowSession) -> Dict[str, Any]:
        return self.ctx.sessions.get(scratch_key(session.flow_type, session.user_id), session.flow_type) or {}

    def _save(self, session: FlowSession, **values: Any):
        scratch = self._scratch(session)
        scratch.update(values)
        scratch["flow_token"] = session.flow_token
        self.ctx.sessions.set(scratch_key(session.flow_type, session.user_id), scratch,
                              SCRATCH_TTL_SECONDS, feature=session.flow_type)

    def _verify_pin(self, user: User, pin: str) -> Optional[str]:
        """Error text for the PIN screen, or None when the PIN is right."""
        try:
            self.ctx.pins.verify(user, str(pin or ""))
        except PinLocked as e:
            self.ctx.activity.log(user.id, "pin_locked", context="flow")
            return e.user_message
        except (InvalidInput, AuthenticationFailed) as e:
            self.ctx.activity.log(user.id, "pin_failed", context="flow")
            return e.message
        return None

    # ------------------------------------------------------------------
    # Onboarding screens
    # ------------------------------------------------------------------

    def _personal_details(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        first = str(data.get("first_name") or "").strip()
        last = str(data.get("last_name") or "").strip()
        if not first or not last:
            return self._render(session, user, "QUESTION_ONE", error_message="Please enter your first and last name.")
        try:
            date_of_birth = parse_date_of_birth(str(data.get("date_of_birth") or ""))
        except InvalidInput as e:
            return self._render(session, user, "QUESTION_ONE", error_message=e.message)
        self._save(session, first_name=first, last_name=last, date_of_birth=date_of_birth,
                   middle_name=str(data.get("middle_name") or "").strip(),
                   gender=str(data.get("gender") or "").strip(), address=str(data.get("address") or "").strip())
        return self._render(session, user, "BVN_SCREEN")

    def _bvn(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = dict(self._scratch(session), bvn=data.get("bvn"))
        try:
            profile = validate_profile(fields)
        except InvalidInput as e:
            return self._render(session, user, "BVN_SCREEN", error_message=e.message)
        self._save(session, bvn=profile["bvn"])
        return self._render(session, user, "PIN_SCREEN")

    def _new_pin(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            pin = validate_new_pin(data.get("pin"), data.get("confirm_pin"))
        except InvalidInput as e:
            return self._render(session, user, "PIN_SCREEN", error_message=e.message)
        self._save(session, pin_hash=hash_pin(pin))
        return self._complete(session, flow_type=session.flow_type)

    # ------------------------------------------------------------------
    # Login screen
    # ------------------------------------------------------------------

    def _login_pin(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        error = self._verify_pin(user, data.get("pin"))
        if error:
            return self._render(session, user, "LOGIN_PIN_SCREEN", error_message=error)
        self._save(session, verified=True)
        return self._complete(session, flow_type=session.flow_type)

    # ------------------------------------------------------------------
    # Data purchase screens
    # ------------------------------------------------------------------

    def _network(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        network = str(data.get("network") or "").upper()
        if network not in NETWORKS:
            return self._render(session, user, "NETWORK_SELECTION_SCREEN", error_message="Please choose a network.")
        if not self.ctx.plans.list_by_network(network):
            return self._render(session, user, "NETWORK_SELECTION_SCREEN",
                                error_message=f"No {network} plans are available right now.")
        self._save(session, network=network)
        return self._render(session, user, "PHONE_INPUT_SCREEN")

    def _phone(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            local = to_local(normalize(str(data.get("phone") or ""), self.ctx.settings.default_country_code))
        except InvalidPhoneNumber:
            local = ""
        if len(local) != 11 or not local.startswith("0"):
            return self._render(session, user, "PHONE_INPUT_SCREEN",
                                error_message="Enter an 11-digit Nigerian number, e.g. 08031234567.")
        self._save(session, phone=local)
        return self._render(session, user, "DATA_PLAN_SELECTION_SCREEN")

    def _plan(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        scratch = self._scratch(session)
        plan = self.ctx.plans.get(data.get("plan_id"))
        if plan is None or not plan.active or plan.network != scratch.get("network"):
            return self._render(session, user, "DATA_PLAN_SELECTION_SCREEN", error_message="Please choose a plan.")
        self._save(session, plan_id=plan.id)
        return self._render(session, user, "PIN_VERIFICATION_SCREEN")

    def _purchase_pin(self, session: FlowSession, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        error = self._verify_pin(user, data.get("pin"))
        if error:
            return self._render(session, user, "PIN_VERIFICATION_SCREEN", error_message=error)
        self._save(session, pin_verified=True)
        return self._complete(session, flow_type=session.flow_type)


def _error(screen: str, message: str) -> Dict[str, Any]:
    response: Dict[str, Any] = {"data": {"error_message": message, "has_error": True}}
    if screen:
        response["screen"] = screen
    return response


# ============================================================================
# COMPLETION
# ============================================================================

class FlowSubmissionHandler:
    """Runs the business action for a Flow completion that came in through the webhook."""

    def __init__(self, onboarding: OnboardingHandler, data: DataHandler):
        self.onboarding = onboarding
        self.data = data

    def handle(self, ctx: AppContext, turn: Turn) -> Outcome:
        event = turn.event
        fields = {key: value for key, value in (event.response_json or {}).items()
                  if key != "flow_token" and key not in SERVER_ONLY_FIELDS}
        token = event.flow_token or (event.response_json or {}).get("flow_token")

        try:
            session = ctx.flow_tokens.bind(token)
        except (FlowTokenNotFound, FlowTokenExpired) as e:
            self.onboarding.fail(ctx, turn, e)
            return Done()
        if session.user_id != turn.user.id:
            logger.warning(f"Flow token for user {session.user_id} submitted by user {turn.user.id}")
            self.onboarding.fail(ctx, turn, FlowTokenNotFound())
            return Done()

        key = scratch_key(session.flow_type, session.user_id)
        scratch = ctx.sessions.get(key, session.flow_type) or {}
        if scratch.get("flow_token") not in (None, token):
            # Left over from an earlier invitation.
            scratch = {}
        merged = dict(fields, **scratch)

        try:
            if session.flow_type == FlowType.ONBOARDING.value:
                outcome = self.onboarding.complete(ctx, turn, merged)
            elif session.flow_type == FlowType.LOGIN.value:
                outcome = self._login(ctx, turn, merged)
            elif session.flow_type == FlowType.DATA_PURCHASE.value:
                outcome = self._data_purchase(ctx, turn, merged)
            else:
                logger.error(f"Unknown flow type {session.flow_type!r}")
                outcome = Done()
        finally:
            ctx.flow_tokens.revoke(token)
            ctx.sessions.delete(key)
        return outcome

    def _login(self, ctx: AppContext, turn: Turn, fields: Dict[str, Any]) -> Outcome:
        if not fields.get("verified"):
            try:
                ctx.pins.verify(turn.user, str(fields.get("pin") or ""))
            except (InvalidInput, AuthenticationFailed) as e:
                self.onboarding.fail(ctx, turn, e)
                return Done()
        ctx.sessions.set(session_key(Namespace.LOGIN, turn.user.id), {"loggedInAt": turn.now.isoformat()},
                         LOGIN_SESSION_TTL_SECONDS)
        ctx.activity.log(turn.user.id, "login")
        self.onboarding.say(ctx, turn, "✅ Login successful! How can I help you today?")
        return Done()

    def _data_purchase(self, ctx: AppContext, turn: Turn, fields: Dict[str, Any]) -> Outcome:
        if not turn.user.is_onboarded:
            return self.onboarding.require_setup(ctx, turn)
        if not fields.get("pin_verified"):
            try:
                ctx.pins.verify(turn.user, str(fields.get("pin") or ""))
            except (InvalidInput, AuthenticationFailed) as e:
                self.data.fail(ctx, turn, e)
                return Done()
        if not fields.get("plan_id"):
            self.data.fail(ctx, turn, ProviderUnavailable("data purchase completed without a plan"))
            return Done()
        return self.data.purchase(ctx, turn, str(fields.get("network") or ""), str(fields.get("phone") or ""),
                                  fields["plan_id"])
