"""
PLC identity mutation workflow.

Every change (link a URL, add a rotation key, remove a rotation key) runs
the same fixed sequence:

    Start -> Authenticated -> ConfirmationRequested -> ConfirmationEntered -> Submitted

Any error moves the workflow to Aborted. A change that turns out to be a
no-op ends in Unchanged right after login, before a code is ever emailed.

The PLC protocol is snapshot based: each operation carries the complete
rotationKeys / alsoKnownAs / verificationMethods / services state, so a
mutation copies all four fields and alters exactly one.

If the process dies between requesting the code and submitting, the
emailed code is simply never used. Nothing to clean up on our side.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from rich.console import Console

from .errors import AtDidError, ResolutionError
from .identity import PLC_PREFIX, IdentityResolver, latest_operation
from .keys import bare_key, normalize_did_key, parse_did_key
from .session import PdsSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlcUpdate:
    """The complete desired end state of the four mutable PLC fields."""

    rotation_keys: list[str] = field(default_factory=list)
    also_known_as: list[str] = field(default_factory=list)
    verification_methods: dict = field(default_factory=dict)
    services: dict = field(default_factory=dict)

    @classmethod
    def from_operation(cls, operation: dict) -> "PlcUpdate":
        """Build from an audit log operation, including legacy genesis ops."""
        op_type = operation.get("type")
        if op_type == "plc_tombstone":
            raise ResolutionError("DID has been tombstoned")
        if op_type == "create":
            # Legacy genesis format predating plc_operation
            return cls(
                rotation_keys=[operation["recoveryKey"], operation["signingKey"]],
                also_known_as=[f"at://{operation['handle']}"],
                verification_methods={"atproto": operation["signingKey"]},
                services={
                    "atproto_pds": {
                        "type": "AtprotoPersonalDataServer",
                        "endpoint": operation["service"],
                    }
                },
            )
        return cls(
            rotation_keys=list(operation.get("rotationKeys", [])),
            also_known_as=list(operation.get("alsoKnownAs", [])),
            verification_methods=dict(operation.get("verificationMethods", {})),
            services=dict(operation.get("services", {})),
        )

    @classmethod
    def from_credentials(cls, credentials: dict) -> "PlcUpdate":
        """Build from getRecommendedDidCredentials (same field names)."""
        return cls.from_operation(credentials)

    def to_params(self) -> dict:
        return {
            "rotationKeys": list(self.rotation_keys),
            "alsoKnownAs": list(self.also_known_as),
            "verificationMethods": dict(self.verification_methods),
            "services": dict(self.services),
        }


def link_urls(also_known_as: list[str], handle: str, urls: list[str]) -> list[str]:
    """
    Put at://<handle> first, then append any URLs not already listed.

    Existing entries keep their relative order.
    """
    self_id = f"at://{handle}"
    result = list(also_known_as)
    if not result or result[0] != self_id:
        result = [self_id] + [aka for aka in result if aka != self_id]
    for url in urls:
        if url not in result:
            result.append(url)
    return result


def add_rotation_key(rotation_keys: list[str], key: str) -> list[str] | None:
    """Append key, or return None if it is already present."""
    if bare_key(key) in {bare_key(k) for k in rotation_keys}:
        return None
    return list(rotation_keys) + [normalize_did_key(key)]


def remove_rotation_key(rotation_keys: list[str], key: str) -> list[str] | None:
    """Drop the one matching entry, or return None if the key is not present."""
    target = bare_key(key)
    for i, existing in enumerate(rotation_keys):
        if bare_key(existing) == target:
            return list(rotation_keys[:i]) + list(rotation_keys[i + 1:])
    return None


@dataclass
class Plan:
    """What a mutation wants to submit; update is None when there is nothing to do."""

    update: PlcUpdate | None
    message: str = ""
    warning: bool = False


class Mutation:
    """One change to a PLC identity."""

    title = "PLC operation"

    async def plan(self, session: PdsSession, current: PlcUpdate) -> Plan:
        raise NotImplementedError

    def summary(self, update: PlcUpdate) -> tuple[str, list[str]]:
        raise NotImplementedError


class LinkUrls(Mutation):
    title = "alsoKnownAs"

    def __init__(self, handle: str, urls: list[str]):
        self.handle = handle
        self.urls = list(urls)

    async def plan(self, session, current):
        handle = session.handle or self.handle
        aka = link_urls(current.also_known_as, handle, self.urls)
        if aka == current.also_known_as:
            return Plan(None, "alsoKnownAs already includes every URL")
        return Plan(replace(current, also_known_as=aka))

    def summary(self, update):
        return "Your identity now includes:", update.also_known_as


class AddRotationKey(Mutation):
    title = "rotation keys"

    def __init__(self, key: str):
        self.key = normalize_did_key(key)

    async def plan(self, session, current):
        updated = add_rotation_key(current.rotation_keys, self.key)
        if updated is None:
            return Plan(None, f"{self.key} is already a rotation key")
        return Plan(replace(current, rotation_keys=updated))

    def summary(self, update):
        return "Rotation keys are now:", update.rotation_keys


class RemoveRotationKey(Mutation):
    title = "rotation keys"

    def __init__(self, key: str):
        parse_did_key(key)
        self.key = normalize_did_key(key)

    async def plan(self, session, current):
        updated = remove_rotation_key(current.rotation_keys, self.key)
        if updated is None:
            listing = "\n".join(f"  - {k}" for k in current.rotation_keys)
            return Plan(
                None,
                f"{self.key} is not a rotation key. Current rotation keys:\n{listing}",
                warning=True,
            )
        return Plan(replace(current, rotation_keys=updated))

    def summary(self, update):
        return "Rotation keys are now:", update.rotation_keys


class WorkflowState(str, Enum):
    START = "start"
    AUTHENTICATED = "authenticated"
    CONFIRMATION_REQUESTED = "confirmation_requested"
    CONFIRMATION_ENTERED = "confirmation_entered"
    SUBMITTED = "submitted"
    UNCHANGED = "unchanged"
    ABORTED = "aborted"


TERMINAL_STATES = {WorkflowState.SUBMITTED, WorkflowState.UNCHANGED, WorkflowState.ABORTED}

TRANSITIONS = {
    WorkflowState.START: {WorkflowState.AUTHENTICATED},
    WorkflowState.AUTHENTICATED: {
        WorkflowState.CONFIRMATION_REQUESTED,
        WorkflowState.UNCHANGED,
    },
    WorkflowState.CONFIRMATION_REQUESTED: {WorkflowState.CONFIRMATION_ENTERED},
    WorkflowState.CONFIRMATION_ENTERED: {WorkflowState.SUBMITTED},
}


@dataclass
class WorkflowResult:
    state: WorkflowState
    update: PlcUpdate | None = None
    operation: dict | None = None
    message: str = ""


class MutationWorkflow:
    """Runs one mutation through login, email confirmation, signing and submission."""

    def __init__(
        self,
        session: PdsSession,
        resolver: IdentityResolver,
        mutation: Mutation,
        prompt_password: Callable[[str], str],
        prompt_code: Callable[[], str],
        console: Console | None = None,
    ):
        self.session = session
        self.resolver = resolver
        self.mutation = mutation
        self.prompt_password = prompt_password
        self.prompt_code = prompt_code
        self.console = console or Console(emoji=False)
        self.state = WorkflowState.START

    def _advance(self, new_state: WorkflowState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Workflow already {self.state.value}")
        allowed = TRANSITIONS.get(self.state, set()) | {WorkflowState.ABORTED}
        if new_state not in allowed:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value}")
        logger.debug("Workflow %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    async def current_state(self) -> PlcUpdate:
        """
        Read the identity's current fields.

        did:plc reads the latest audit log operation; anything else falls
        back to the PDS's recommended credentials. The two are not
        guaranteed to agree.
        """
        did = self.session.did
        if did and did.startswith(PLC_PREFIX):
            log = await self.resolver.get_audit_log(did)
            return PlcUpdate.from_operation(latest_operation(log))
        credentials = await self.session.get_recommended_credentials()
        return PlcUpdate.from_credentials(credentials)

    def collect_code(self) -> str:
        """Prompt until a non-blank code is entered."""
        while True:
            code = (self.prompt_code() or "").strip()
            if code:
                return code
            self.console.print("[yellow]Please enter the verification code[/yellow]")

    async def run(self, handle: str) -> WorkflowResult:
        if self.state is not WorkflowState.START:
            raise RuntimeError("A workflow can only run once")
        try:
            return await self._run(handle)
        except AtDidError:
            self._advance(WorkflowState.ABORTED)
            raise

    async def _run(self, handle: str) -> WorkflowResult:
        console = self.console

        console.print("[cyan]Step 1: Login[/cyan]")
        password = self.prompt_password(handle)
        await self.session.login(handle, password)
        self._advance(WorkflowState.AUTHENTICATED)
        console.print("[green]Logged in successfully[/green]\n")

        current = await self.current_state()
        plan = await self.mutation.plan(self.session, current)
        if plan.update is None:
            self._advance(WorkflowState.UNCHANGED)
            style = "yellow" if plan.warning else "green"
            console.print(plan.message, style=style, markup=False, emoji=False, highlight=False)
            return WorkflowResult(self.state, message=plan.message)

        console.print("[cyan]Step 2: Requesting email verification code[/cyan]")
        await self.session.request_plc_signature()
        self._advance(WorkflowState.CONFIRMATION_REQUESTED)
        console.print("[green]✓ Email sent. Check your inbox[/green]\n")

        console.print("[cyan]Step 3: Email verification[/cyan]")
        code = self.collect_code()
        self._advance(WorkflowState.CONFIRMATION_ENTERED)

        console.print("\n[cyan]Step 4: Signing and submitting PLC operation[/cyan]")
        operation = await self.session.sign_plc_operation(code, plan.update.to_params())
        await self.session.submit_plc_operation(operation)
        self._advance(WorkflowState.SUBMITTED)

        heading, values = self.mutation.summary(plan.update)
        console.print(f"\n[bold green]Success! Updated DID {self.mutation.title}[/bold green]")
        console.print(f"[dim]{heading}[/dim]")
        for value in values:
            console.print(f"  - {value}", style="dim", markup=False, emoji=False, highlight=False)

        return WorkflowResult(self.state, update=plan.update, operation=operation)
