"""CLI commands for VPN connection control."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, AsyncIterator

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .api import ServerAPIClient, ServerTarget, StaticConfigTarget
from .api.auth import EnvTokenAuthorizer
from .api.errors import ServerAPIError, is_retryable, is_user_cancelled
from .api.models import ConnectableTarget, PasswordStrategy, Profile, StaticCredentials
from .flow import (
    ConnectionFlow,
    ConnectionFlowError,
    DataStore,
    ExpiryPolicy,
    FlowContinuationPolicy,
    FlowStatus,
    NotificationScheduler,
)
from .flow.events import DidBeginConnecting, FlowEvent, SessionExpired, SignalChanged
from .flow.keys import WireGuardKeyProvider
from .flow.notifications import LocalNotificationCenter, NotificationRequest
from .flow.state import ControlKind, InternalState, Signals
from .flow.storage import ConnectionAttemptRecord, find_active_attempt
from .utils import AppConfig, ConfigError, CredentialsError, get_credentials, load_config
from .utils.credentials import credentials_configured
from .utils.log import setup_logging
from .utils.preferences import JSONPreferences
from .vpn import ConfigManager, SystemTunnelController, TunnelError

app = typer.Typer(
    name="vpnflow",
    help="Connect to VPN servers and static OpenVPN configs",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    FlowStatus.CONNECTED: "green",
    FlowStatus.NOT_CONNECTED: "yellow",
    FlowStatus.RECONNECTING: "yellow",
}


class _ConsentPrompt:
    async def ask_consent(self) -> bool:
        return typer.confirm("Notify you before your VPN session expires?", default=True)


class _SettingsGuidance:
    def show_notifications_disabled(self, app_name: str) -> None:
        console.print(
            f"[yellow]Notifications are disabled for {app_name}.[/yellow]\n"
            "Allow notifications in your system settings to be reminded before sessions expire."
        )


class _PasswordPrompt:
    async def ask_password(self, username: str) -> str | None:
        try:
            return typer.prompt(f"Password for {username}", hide_input=True)
        except typer.Abort:
            return None


def _deliver(request: NotificationRequest) -> None:
    console.print(f"[bold yellow]{request.title}[/bold yellow] - {request.body}")


def _run_async(coro):
    """Run an async function synchronously, turning errors into exit codes."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        raise typer.Exit(130)
    except (ServerAPIError, ConnectionFlowError, TunnelError, CredentialsError) as e:
        if is_user_cancelled(e):
            console.print("[dim]Cancelled[/dim]")
            raise typer.Exit(1)
        console.print(f"[red]{e}[/red]")
        if is_retryable(e):
            console.print("The profile list may be out of date. Run [bold]vpnflow profiles[/bold] and try again.")
        raise typer.Exit(1)


def _spinner(description: str) -> Progress:
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    )
    progress.add_task(description, total=None)
    return progress


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj


@asynccontextmanager
async def _open_tunnel(config: AppConfig) -> AsyncIterator[SystemTunnelController]:
    tunnel = SystemTunnelController(ConfigManager(config.runtime_dir))
    await tunnel.start()
    try:
        yield tunnel
    finally:
        await tunnel.aclose()


@asynccontextmanager
async def _open_flow(
    config: AppConfig,
    target: ConnectableTarget,
    tunnel: SystemTunnelController,
) -> AsyncIterator[ConnectionFlow]:
    policy = ExpiryPolicy.from_config(config)
    data_store = DataStore.for_target(config.data_dir, target)
    api = ServerAPIClient(
        timeout=config.http_timeout,
        key_provider=WireGuardKeyProvider(data_store),
        fallback_token=config.access_token,
    )
    notifier = None
    if isinstance(target, ServerTarget):
        notifier = NotificationScheduler(
            LocalNotificationCenter(_deliver),
            JSONPreferences(config.preferences_file),
            _ConsentPrompt(),
            _SettingsGuidance(),
            policy=policy,
            app_name=config.app_name,
        )
    flow = ConnectionFlow(
        target,
        tunnel,
        data_store,
        api=api,
        authorizer=EnvTokenAuthorizer(config),
        notifier=notifier,
        password_prompt=_PasswordPrompt(),
        policy=policy,
    )
    try:
        yield flow
    finally:
        flow.close()
        await api.aclose()


def _active_attempt(config: AppConfig, tunnel: SystemTunnelController) -> ConnectionAttemptRecord | None:
    if not tunnel.is_enabled:
        return None
    return find_active_attempt(config.data_dir, tunnel.current_attempt_id)


def _profile_table(profiles: tuple[Profile, ...] | list[Profile], selected: str | None) -> Table:
    table = Table(title="Profiles")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Protocols")
    table.add_column("Default Gateway", justify="center")
    for profile in profiles:
        marker = " [bold]*[/bold]" if profile.profile_id == selected else ""
        table.add_row(
            profile.profile_id + marker,
            profile.name(),
            ", ".join(profile.vpn_protocols) or "-",
            "yes" if profile.default_gateway else "no",
        )
    return table


def _print_signals(signals: Signals) -> None:
    style = STATUS_STYLES.get(signals.status, "cyan")
    console.print(f"[{style}]{signals.status.value}[/{style}]")
    if signals.status_detail is not None:
        console.print(f"  {signals.status_detail}")
    if signals.additional_control.kind == ControlKind.RENEW_SESSION_BUTTON:
        console.print("  Run [bold]vpnflow renew[/bold] to renew the session")
    if signals.additional_control.kind == ControlKind.SET_CREDENTIALS_BUTTON:
        console.print("  Run [bold]vpnflow connect-config[/bold] with --user to set credentials")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logs")] = False,
):
    """Load configuration and set up logging."""
    try:
        config = load_config()
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    setup_logging("DEBUG" if verbose else config.log_level, config.log_file, console)
    ctx.obj = config


@app.command()
def profiles(
    ctx: typer.Context,
    server: Annotated[str, typer.Option("--server", "-s", help="Server base URL (e.g., https://vpn.example.org)")],
):
    """List the profiles a server offers."""
    config = _config(ctx)
    target = ServerTarget(api_base_url=server, auth_base_url=server)

    async def list_profiles():
        async with _open_tunnel(config) as tunnel, _open_flow(config, target, tunnel) as flow:
            with _spinner(f"Fetching profiles from {server}..."):
                await flow.begin_server_flow(FlowContinuationPolicy.DO_NOT_CONTINUE)
            return flow.profiles or (), flow.data_store.selected_profile_id

    found, selected = _run_async(list_profiles())
    if not found:
        console.print("[yellow]No profiles available[/yellow]")
        return
    console.print(_profile_table(found, selected))


@app.command()
def connect(
    ctx: typer.Context,
    server: Annotated[str, typer.Option("--server", "-s", help="Server base URL")],
    profile: Annotated[
        str | None,
        typer.Option("--profile", "-p", help="Profile ID (default: the only or last used one)")
    ] = None,
    any_profile: Annotated[
        bool,
        typer.Option("--any", help="Fall back to the first profile if none was used before")
    ] = False,
):
    """Connect to a VPN server.

    Without --profile, connects with the server's only profile or the one
    used last time; otherwise lists the profiles to choose from.
    """
    config = _config(ctx)
    target = ServerTarget(api_base_url=server, auth_base_url=server)
    if profile:
        policy = FlowContinuationPolicy.DO_NOT_CONTINUE
    elif any_profile:
        policy = FlowContinuationPolicy.CONTINUE_WITH_ANY_PROFILE
    else:
        policy = FlowContinuationPolicy.CONTINUE_WITH_SINGLE_OR_LAST_USED_PROFILE

    async def do_connect():
        async with _open_tunnel(config) as tunnel:
            if tunnel.is_enabled:
                console.print("[yellow]Already connected. Run vpnflow disconnect first.[/yellow]")
                return False
            async with _open_flow(config, target, tunnel) as flow:
                with _spinner(f"Connecting to {server}..."):
                    await flow.begin_server_flow(policy)
                if profile and flow.state == InternalState.IDLE:
                    flow.select_profile(profile)
                    with _spinner(f"Connecting with profile {profile}..."):
                        await flow.continue_flow(profile)

                if flow.state != InternalState.ENABLED:
                    if flow.profiles:
                        console.print("[yellow]Choose a profile with --profile:[/yellow]")
                        console.print(_profile_table(flow.profiles, flow.data_store.selected_profile_id))
                    return False

                name = flow.connecting_profile.name() if flow.connecting_profile else server
                console.print(f"[green]Tunnel enabled[/green] for [bold]{name}[/bold]")
                if flow.session_expires_at:
                    expires = flow.session_expires_at.astimezone().strftime("%Y-%m-%d %H:%M")
                    console.print(f"  Session expires at {expires}")
                await flow.wait_for_notifications()
                return True

    if not _run_async(do_connect()):
        raise typer.Exit(1)


@app.command("connect-config")
def connect_config(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="OpenVPN configuration file", exists=True, dir_okay=False)],
    user: Annotated[str | None, typer.Option("--user", "-u", help="User name for the config")] = None,
    ask_password: Annotated[
        bool,
        typer.Option("--ask-password", help="Ask for the password on every connect")
    ] = False,
):
    """Connect with a static OpenVPN configuration file.

    The password comes from VPNFLOW_PASS unless --ask-password is given.
    """
    config = _config(ctx)
    credentials = None
    if ask_password:
        username = user or typer.prompt("User name")
        credentials = StaticCredentials(username=username, password_strategy=PasswordStrategy.ASK_EVERY_TIME)
    elif user or credentials_configured():
        try:
            saved = get_credentials(user)
        except CredentialsError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        credentials = StaticCredentials(username=saved.username, password=saved.password)
    target = StaticConfigTarget(name=path.stem, config_path=path.resolve(), credentials=credentials)

    async def do_connect():
        async with _open_tunnel(config) as tunnel:
            if tunnel.is_enabled:
                console.print("[yellow]Already connected. Run vpnflow disconnect first.[/yellow]")
                return False
            async with _open_flow(config, target, tunnel) as flow:
                await flow.begin_static_config_flow()
                if flow.state != InternalState.ENABLED:
                    return False
                console.print(f"[green]Tunnel enabled[/green] for [bold]{target.name}[/bold]")
                return True

    if not _run_async(do_connect()):
        raise typer.Exit(1)


@app.command()
def disconnect(ctx: typer.Context):
    """Disconnect from VPN."""
    config = _config(ctx)

    async def do_disconnect():
        async with _open_tunnel(config) as tunnel:
            if not tunnel.is_enabled:
                console.print("[yellow]Already disconnected[/yellow]")
                return
            record = _active_attempt(config, tunnel)
            if record is None:
                # No record to report from; just bring the tunnel down
                await tunnel.disable()
                console.print("[green]Disconnected[/green]")
                return
            async with _open_flow(config, record.target, tunnel) as flow:
                flow.restore(record)
                with _spinner("Disconnecting..."):
                    await flow.disable(report_to_server=True, fire_and_forget=True)
            console.print("[green]Disconnected[/green]")

    _run_async(do_disconnect())


@app.command()
def renew(ctx: typer.Context):
    """Renew the session of the active server connection."""
    config = _config(ctx)

    async def do_renew():
        async with _open_tunnel(config) as tunnel:
            record = _active_attempt(config, tunnel)
            if record is None or not isinstance(record.target, ServerTarget):
                console.print("[yellow]No active server connection to renew[/yellow]")
                return False
            async with _open_flow(config, record.target, tunnel) as flow:
                flow.restore(record)
                with _spinner("Renewing session..."):
                    await flow.renew_session()
                if flow.state != InternalState.ENABLED:
                    return False
                expires = flow.session_expires_at.astimezone().strftime("%Y-%m-%d %H:%M")
                console.print(f"[green]Session renewed[/green], expires at {expires}")
                await flow.wait_for_notifications()
                return True

    if not _run_async(do_renew()):
        raise typer.Exit(1)


@app.command()
def status(ctx: typer.Context):
    """Show current VPN connection status."""
    config = _config(ctx)

    async def show_status():
        async with _open_tunnel(config) as tunnel:
            record = _active_attempt(config, tunnel)
            if record is None:
                console.print("[yellow]Not connected[/yellow]")
                return
            async with _open_flow(config, record.target, tunnel) as flow:
                flow.restore(record)
                with _spinner("Checking connection status..."):
                    await flow.expand_connection_info()
                _print_signals(flow.signals)
                info = flow.signals.connection_info_state.info
                if info is not None:
                    console.print(f"  {info}")
                    if info.bytes_received is not None:
                        console.print(f"  Received: {info.bytes_received} B, sent: {info.bytes_sent} B")

    _run_async(show_status())


@app.command()
def watch(ctx: typer.Context):
    """Follow the active connection and deliver expiry notifications."""
    config = _config(ctx)

    async def do_watch():
        async with _open_tunnel(config) as tunnel:
            record = _active_attempt(config, tunnel)
            if record is None:
                console.print("[yellow]Not connected[/yellow]")
                return
            async with _open_flow(config, record.target, tunnel) as flow:
                ended = asyncio.Event()

                def on_event(event: FlowEvent) -> None:
                    if isinstance(event, SignalChanged) and event.name in ("status", "status_detail"):
                        _print_signals(flow.signals)
                    elif isinstance(event, SessionExpired):
                        console.print("[red]Session expired[/red]")
                    elif isinstance(event, DidBeginConnecting) and event.should_ask_for_password:
                        console.print("[yellow]Reconnecting needs the password again; run connect-config[/yellow]")
                    if flow.state == InternalState.IDLE:
                        ended.set()

                flow.subscribe(on_event)
                flow.restore(record)
                _print_signals(flow.signals)
                if await flow.schedule_notifications_on_active_vpn():
                    console.print("[dim]Session expiry notifications scheduled[/dim]")
                await ended.wait()
                console.print("[yellow]Tunnel is down[/yellow]")

    _run_async(do_watch())


@app.command()
def notifications(
    ctx: typer.Context,
    action: Annotated[str, typer.Argument(help="on, off or show")] = "show",
):
    """Turn session expiry notifications on or off."""
    config = _config(ctx)
    scheduler = NotificationScheduler(
        LocalNotificationCenter(_deliver),
        JSONPreferences(config.preferences_file),
        guidance=_SettingsGuidance(),
        app_name=config.app_name,
    )

    if action == "on":
        if _run_async(scheduler.enable_notifications()):
            console.print("[green]Notifications enabled[/green]")
        else:
            raise typer.Exit(1)
    elif action == "off":
        scheduler.disable_notifications()
        console.print("[yellow]Notifications disabled[/yellow]")
    elif action == "show":
        table = Table(title="Notifications")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        table.add_row("Asked for consent", "yes" if scheduler.preferences.has_asked_user_consent else "no")
        table.add_row("Enabled", "[green]yes[/green]" if scheduler.is_enabled else "[yellow]no[/yellow]")
        console.print(table)
    else:
        console.print(f"[red]Unknown action '{action}', use on, off or show[/red]")
        raise typer.Exit(1)
