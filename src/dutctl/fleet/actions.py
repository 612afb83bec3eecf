"""Named remote actions applied to a single DUT.

Action names are validated as a batch before anything runs; actions then
run in the order given and the first failure stops the sequence.
"""

from typing import Callable, Mapping, Optional, Sequence

from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.errors import ActionFailed, DutError, InvalidAction, RemoteCommandError
from dutctl.fleet.transport import Transport
from dutctl.telemetry.logger import bind_context, get_logger, unbind_context

logger = get_logger(__name__)

DutAction = Callable[[Transport, ConnectionDescriptor], None]

REBOOT_COMMAND = "nohup sh -c 'sleep 1; reboot' >/dev/null 2>&1 &"
AUTOLOGIN_COMMAND = "/usr/local/autotest/bin/autologin.py -a -d"
TAIL_MESSAGES_COMMAND = "tail -f /var/log/messages"


def run_autologin(transport: Transport, descriptor: ConnectionDescriptor) -> None:
    """Log in to the DUT UI with the test account."""
    status = transport.run_interactive(descriptor, AUTOLOGIN_COMMAND)
    if status != 0:
        raise RemoteCommandError(
            f"autologin exited with status {status}",
            target=descriptor.address,
            exit_code=status,
        )


def do_reboot(transport: Transport, descriptor: ConnectionDescriptor) -> None:
    # Detached so the command returns before the connection drops
    transport.run(descriptor, REBOOT_COMMAND).check()


def do_login(transport: Transport, descriptor: ConnectionDescriptor) -> None:
    run_autologin(transport, descriptor)


def do_tail_messages(transport: Transport, descriptor: ConnectionDescriptor) -> None:
    transport.run_piped(descriptor, TAIL_MESSAGES_COMMAND)


DUT_ACTIONS: dict[str, DutAction] = {
    "reboot": do_reboot,
    "login": do_login,
    "tail_messages": do_tail_messages,
}


class ActionDispatcher:
    """Runs named actions against one DUT.

    Example:
        dispatcher = ActionDispatcher(transport)
        dispatcher.dispatch(descriptor, ["login", "tail_messages"])
    """

    def __init__(
        self,
        transport: Transport,
        actions: Optional[Mapping[str, DutAction]] = None,
    ) -> None:
        self.transport = transport
        self.actions = dict(actions) if actions is not None else dict(DUT_ACTIONS)

    def list_actions(self) -> list[str]:
        """Available action names, sorted for display."""
        return sorted(self.actions)

    def validate(self, names: Sequence[str]) -> None:
        """Reject the request if it is empty or names any unknown action.

        Raises:
            InvalidAction: Listing every unknown name
        """
        unknown = [name for name in names if name not in self.actions]
        if unknown or not names:
            raise InvalidAction(unknown)

    def dispatch(self, descriptor: ConnectionDescriptor, names: Sequence[str]) -> None:
        """Validate names, then run each action in order.

        Raises:
            InvalidAction: Before anything runs, if any name is unknown
            ActionFailed: Naming the first action that failed
        """
        self.validate(names)
        for name in names:
            bind_context(action=name)
            logger.info("Running DUT action", target=descriptor.address)
            try:
                self.actions[name](self.transport, descriptor)
            except DutError as e:
                raise ActionFailed(name, e, target=descriptor.address) from e
            finally:
                unbind_context("action")
