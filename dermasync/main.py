"""DermaSync console client."""

import asyncio
import logging
import sys
from pathlib import Path

import openai
from rich.console import Console
from rich.status import Status
from rich.table import Table

from dermasync.app import App, build_app
from dermasync.config import Settings, setup_logging
from dermasync.errors import NotAuthenticatedError, describe_error
from dermasync.models import Medication, PatientRecord

logger = logging.getLogger(__name__)

console = Console()

HELP_TEXT = """[bold]Commands[/bold]
  signup | login | logout | reset     account
  add                                 add a patient
  list [text]                         list patients, optionally filtered
  show <name>                         show one patient's stored record
  delete <name>                       delete a patient
  analyze                             group patients by condition
  groups                              show the last analysis
  approve <disease> | disapprove <disease>
  export [path]                       write patients to CSV
  test                                check the AI service connection
  rotate-key                          switch to a new encryption key
  help | quit"""


async def ask(label: str, password: bool = False) -> str:
    """Prompt without blocking the event loop."""
    value = await asyncio.to_thread(console.input, f"[bold green]{label}:[/bold green] ", password=password)
    return value.strip()


def require_login(app: App) -> str:
    identity = app.identity
    if not identity:
        raise NotAuthenticatedError("Please log in first")
    return identity


def render_patients(patients: list[PatientRecord], title: str = "Patients") -> Table:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Diagnosis")
    table.add_column("Medications")
    table.add_column("Status")
    for patient in patients:
        table.add_row(
            patient.name,
            patient.diagnosis_notes,
            ", ".join(f"{m.name} ({m.dosage}, {m.frequency})" for m in patient.medications),
            patient.recommendation_status.value if patient.recommendation_status else "",
        )
    return table


async def handle_signup(app: App, args: str) -> None:
    email = await ask("Email")
    password = await ask("Password", password=True)
    confirm = await ask("Confirm password", password=True)
    if password != confirm:
        console.print("[bold red]Passwords do not match[/bold red]")
        return
    await app.session.sign_up(email, password)
    console.print(f"[bold blue]Account created. Signed in as {email}[/bold blue]")


async def handle_login(app: App, args: str) -> None:
    email = await ask("Email")
    password = await ask("Password", password=True)
    with Status("Signing in...", console=console, spinner="dots"):
        await app.session.sign_in(email, password)
    console.print(f"[bold blue]Signed in. {len(app.workspace.patients)} patients loaded[/bold blue]")


async def handle_logout(app: App, args: str) -> None:
    await app.session.sign_out()
    console.print("[bold blue]Signed out[/bold blue]")


async def handle_reset(app: App, args: str) -> None:
    email = args or await ask("Email")
    await app.session.reset_password(email)
    console.print("If an account exists for that email, a reset link has been sent.")


async def handle_add(app: App, args: str) -> None:
    identity = require_login(app)
    name = args or await ask("Patient name")
    if not name:
        console.print("[bold red]Name is required[/bold red]")
        return
    notes = await ask("Diagnosis notes")

    medications = []
    while True:
        med_name = await ask("Medication (blank to finish)")
        if not med_name:
            break
        dosage = await ask("Dosage")
        frequency = await ask("Frequency")
        medications.append(Medication(med_name, dosage, frequency))

    record = PatientRecord(name=name, diagnosis_notes=notes, medications=medications)
    with Status("Saving...", console=console, spinner="dots"):
        await app.workspace.add_patient(identity, record)
    console.print(f"[bold blue]Added {name}[/bold blue]")


async def handle_list(app: App, args: str) -> None:
    require_login(app)
    patients = app.workspace.filtered_patients(args)
    if not patients:
        console.print("No patients found.")
        return
    console.print(render_patients(patients))


async def handle_show(app: App, args: str) -> None:
    identity = require_login(app)
    name = args or await ask("Patient name")
    patient = app.workspace.find_by_name(name)
    if patient is None:
        console.print(f"[bold red]No patient named {name}[/bold red]")
        return
    # Read through to the store rather than the synced copy
    stored = await app.repository.get_patient(identity, patient.id)
    if stored is None:
        console.print(f"[bold red]{name} no longer exists[/bold red]")
        return
    console.print(render_patients([stored], title=stored.name))


async def handle_delete(app: App, args: str) -> None:
    identity = require_login(app)
    name = args or await ask("Patient name")
    patient = app.workspace.find_by_name(name)
    if patient is None:
        console.print(f"[bold red]No patient named {name}[/bold red]")
        return
    await app.workspace.delete_patient(identity, patient.id)
    console.print(f"[bold blue]Deleted {name}[/bold blue]")


async def handle_analyze(app: App, args: str) -> None:
    identity = require_login(app)
    with Status("Analyzing...", console=console, spinner="dots"):
        await app.workspace.analyze(identity)
    await handle_groups(app, args)


async def handle_groups(app: App, args: str) -> None:
    if not app.workspace.analysis_results:
        console.print("No analysis yet. Run 'analyze' first.")
        return
    for group in app.workspace.analysis_results:
        patients = app.workspace.diagnosis_groups.get(group.disease, [])
        console.print(render_patients(patients, title=group.disease))
        if group.recommended_medications:
            console.print(f"Recommended: {', '.join(group.recommended_medications)}\n")


async def _handle_recommendation(app: App, args: str, approve: bool) -> None:
    identity = require_login(app)
    disease = args or await ask("Disease")
    group = next(
        (g for g in app.workspace.analysis_results if g.disease.lower() == disease.lower()),
        None,
    )
    if group is None:
        console.print(f"[bold red]No analysis group named {disease}[/bold red]")
        return

    selection = await ask("Patients (comma separated, blank for all)")
    if selection:
        names = [n.strip() for n in selection.split(",") if n.strip()]
    else:
        names = [p.name for p in app.workspace.diagnosis_groups.get(group.disease, [])]

    with Status("Updating patients...", console=console, spinner="dots"):
        result = await app.workspace.apply_recommendation(identity, group, names, approve)
    style = "bold blue" if not result.failed and not result.missing else "bold yellow"
    console.print(f"[{style}]{result.message}[/{style}]")


async def handle_approve(app: App, args: str) -> None:
    await _handle_recommendation(app, args, approve=True)


async def handle_disapprove(app: App, args: str) -> None:
    await _handle_recommendation(app, args, approve=False)


async def handle_export(app: App, args: str) -> None:
    require_login(app)
    path = app.workspace.export_csv(Path(args or "patients.csv"))
    console.print(f"[bold blue]Exported to {path}[/bold blue]")


async def handle_test(app: App, args: str) -> None:
    with Status("Contacting AI service...", console=console, spinner="dots"):
        reply = await app.classifier.check_connection()
    console.print(f"[bold cyan]AI:[/bold cyan] {reply}")


async def handle_rotate_key(app: App, args: str) -> None:
    require_login(app)
    with Status("Rotating encryption key...", console=console, spinner="dots"):
        report = await app.rotate_key()
    style = "bold blue" if report.completed and not report.skipped else "bold yellow"
    console.print(
        f"[{style}]Re-encrypted {len(report.migrated)} of {report.total} patients"
        f" ({len(report.skipped)} skipped)[/{style}]"
    )


async def handle_help(app: App, args: str) -> None:
    console.print(HELP_TEXT)


COMMAND_HANDLERS = {
    "signup": handle_signup,
    "login": handle_login,
    "logout": handle_logout,
    "reset": handle_reset,
    "add": handle_add,
    "list": handle_list,
    "search": handle_list,
    "show": handle_show,
    "delete": handle_delete,
    "analyze": handle_analyze,
    "groups": handle_groups,
    "approve": handle_approve,
    "disapprove": handle_disapprove,
    "export": handle_export,
    "test": handle_test,
    "rotate-key": handle_rotate_key,
    "help": handle_help,
}


def attach_console_observers(app: App) -> None:
    """Report sync errors and connectivity changes as they happen."""

    def on_sync_error(error: Exception) -> None:
        console.print(f"[bold red]Sync error:[/bold red] {describe_error(error)}")

    def on_connectivity(connected: bool) -> None:
        if connected:
            console.print("[bold blue]Back online[/bold blue]")
        else:
            console.print("[bold yellow]Offline. Changes cannot be saved[/bold yellow]")

    app.listener.add_error_observer(on_sync_error)
    app.reachability.on_change(on_connectivity)


async def process_command(app: App, line: str) -> bool:
    """Run one command line. Returns False when the user asked to quit."""
    command, _, args = line.partition(" ")
    command = command.lower()
    if command in ("quit", "exit"):
        return False

    handler = COMMAND_HANDLERS.get(command)
    if handler is None:
        console.print(f"Unknown command '{command}'. Type 'help' for a list.")
        return True

    try:
        await handler(app, args.strip())
    except Exception as e:
        logger.debug("Command %s failed", command, exc_info=True)
        console.print(f"[bold red]Error:[/bold red] {describe_error(e)}\n")
    return True


async def run(app: App) -> None:
    """Main command loop."""
    attach_console_observers(app)
    await app.start()
    console.print("[bold blue]Welcome to DermaSync![/bold blue]")
    console.print("Type 'help' for commands, 'quit' to exit.\n")

    is_tty = sys.stdin.isatty()
    try:
        while True:
            try:
                line = await ask("dermasync")
                # Echo input when stdin is piped (not interactive)
                if not is_tty and line:
                    console.print(f"[dim]{line}[/dim]")
            except (EOFError, KeyboardInterrupt):
                console.print("\n[bold blue]Goodbye![/bold blue]")
                break

            if not line:
                continue
            if not await process_command(app, line):
                console.print("[bold blue]Goodbye![/bold blue]")
                break
    finally:
        await app.shutdown()


def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    try:
        app = build_app(settings)
    except openai.OpenAIError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)
    asyncio.run(run(app))


if __name__ == "__main__":
    main()
