"""
CBS Books Interactive Terminal

A lightweight REPL over the ledger for the back office: list invoices,
builders and expenses, inspect one invoice, save its PDF, and print a P&L.
Every command goes through InvoiceService. Rich library for formatted
output.

Run with:
    python interfaces/cli/terminal.py

Or as a module:
    python -m interfaces.cli.terminal
"""

import asyncio
import logging
from functools import partial
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from core.config import get_config
from tools.cbsbooks.errors import BooksError, SyncError, ValidationError
from tools.cbsbooks.models import InvoiceStatus
from tools.cbsbooks.reports import ReportPeriod
from tools.cbsbooks.service import InvoiceService
from tools.cbsbooks.totals import format_currency, format_quantity


# ---------------------------------------------------------------------------
# Logging: quiet for terminal use
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cbs.cli")

STATUS_STYLES = {
    InvoiceStatus.DRAFT: "dim",
    InvoiceStatus.SENT: "yellow",
    InvoiceStatus.PAID: "green",
}


# ---------------------------------------------------------------------------
# BooksTerminal
# ---------------------------------------------------------------------------

class BooksTerminal:
    """Interactive REPL for CBS Books.

    Args:
        service: Ledger service; built from settings when omitted.
        console: Rich console (tests pass one that records output).
    """

    def __init__(self, service: InvoiceService | None = None, console: Console | None = None):
        self.config = get_config()
        self.console = console or Console()
        self.service = service or InvoiceService.from_config(self.config)

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def run(self):
        """Load the ledger, run the REPL, then shut down cleanly."""
        await self._startup()
        try:
            await self._repl_loop()
        except (SystemExit, KeyboardInterrupt):
            self.console.print()
        finally:
            await self._shutdown()

    async def _startup(self):
        try:
            with self.console.status("[bold cyan]Loading ledger...[/bold cyan]"):
                await self.service.load()
        except SyncError as e:
            self.console.print(f"[red]Could not load the ledger: {escape(str(e))}[/red]  (try /refresh)")
        self._print_banner()

    # -----------------------------------------------------------------------
    # REPL loop
    # -----------------------------------------------------------------------

    async def _repl_loop(self):
        """Read stdin in an executor so the event loop stays free."""
        loop = asyncio.get_running_loop()

        while True:
            try:
                line = await loop.run_in_executor(None, partial(input, "cbs> "))
            except KeyboardInterrupt:
                self.console.print("\n[dim]Use /quit to exit.[/dim]")
                continue
            except EOFError:
                break

            line = line.strip()
            if not line:
                continue
            if not line.startswith("/"):
                self.console.print("[dim]Commands start with / (try /help)[/dim]")
                continue
            await self.dispatch_command(line)

    # -----------------------------------------------------------------------
    # Slash command dispatch
    # -----------------------------------------------------------------------

    async def dispatch_command(self, line: str):
        """Route a slash command to its handler and print any ledger error."""
        parts = line.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        handlers = {
            "/invoices": self._cmd_invoices,
            "/clients": self._cmd_clients,
            "/expenses": self._cmd_expenses,
            "/show": self._cmd_show,
            "/pdf": self._cmd_pdf,
            "/report": self._cmd_report,
            "/events": self._cmd_events,
            "/refresh": self._cmd_refresh,
            "/help": self._cmd_help,
            "/quit": self._cmd_quit,
            "/exit": self._cmd_quit,
        }

        handler = handlers.get(cmd)
        if handler is None:
            self.console.print(f"[red]Unknown command: {cmd}[/red]  (try /help)")
            return

        try:
            await handler(arg.strip())
        except ValidationError as e:
            for err in e.errors:
                self.console.print(f"[red]{escape(err.field)}: {escape(err.message)}[/red]")
        except SyncError as e:
            hint = "  (try /refresh)" if e.retryable else ""
            self.console.print(f"[red]Sync failed: {escape(str(e))}[/red]{hint}")
        except BooksError as e:
            self.console.print(f"[red]{escape(str(e))}[/red]")

    # -----------------------------------------------------------------------
    # Slash command implementations
    # -----------------------------------------------------------------------

    async def _cmd_invoices(self, arg: str):
        """/invoices [draft|sent|paid]: List invoices, newest first."""
        status = InvoiceStatus.parse(arg) if arg and arg != "all" else None
        invoices = self.service.list_invoices(status=status)
        if not invoices:
            self.console.print("[dim]No invoices.[/dim]")
            return

        table = Table(title=f"Invoices ({status.value if status else 'all'})")
        table.add_column("Number", style="bold")
        table.add_column("Builder")
        table.add_column("Date")
        table.add_column("Due")
        table.add_column("Total", justify="right")
        table.add_column("Status")
        for inv in invoices:
            style = STATUS_STYLES[inv.status]
            table.add_row(inv.invoice_number, inv.client_name, inv.date, inv.due_date,
                          format_currency(inv.total), f"[{style}]{inv.status.value}[/{style}]")
        self.console.print(table)

        stats = self.service.stats(status=status)
        self.console.print(
            f"Outstanding: [bold]{format_currency(stats.outstanding)}[/bold]  |  "
            f"Paid YTD: [bold]{format_currency(stats.ytd)}[/bold]"
        )

    async def _cmd_clients(self, _arg: str):
        """/clients: List builders."""
        clients = sorted(self.service.clients(), key=lambda c: c.company_name.lower())
        if not clients:
            self.console.print("[dim]No builders.[/dim]")
            return
        table = Table(title="Builders")
        table.add_column("Company", style="bold")
        table.add_column("Email")
        table.add_column("Address")
        for client in clients:
            table.add_row(client.company_name, client.email, client.address or "")
        self.console.print(table)

    async def _cmd_expenses(self, _arg: str):
        """/expenses: List expenses, newest first."""
        expenses = sorted(self.service.expenses(), key=lambda e: e.date, reverse=True)
        if not expenses:
            self.console.print("[dim]No expenses.[/dim]")
            return
        table = Table(title="Expenses")
        table.add_column("Date")
        table.add_column("Payee")
        table.add_column("Category")
        table.add_column("Amount", justify="right")
        for exp in expenses:
            table.add_row(exp.date, exp.payee, exp.category, format_currency(exp.amount))
        self.console.print(table)

    async def _cmd_show(self, arg: str):
        """/show <number>: Show one invoice with its line items."""
        if not arg:
            self.console.print("[red]Usage: /show <invoice number>[/red]")
            return
        inv = self.service.find_invoice_by_number(arg)

        lines = [
            f"[bold]{inv.client_name}[/bold]  {inv.client_email}",
            f"Date: {inv.date}   Due: {inv.due_date}   Status: {inv.status.value}",
        ]
        if inv.project_details:
            lines.append(f"Project: {inv.project_details}")
        if inv.status == InvoiceStatus.PAID:
            lines.append(f"Paid {inv.date_paid} by check {inv.check_number}")
        if inv.payment_link:
            lines.append(f"Pay online: {inv.payment_link}")
        self.console.print(Panel("\n".join(lines), title=f"Invoice #{inv.invoice_number}",
                                 border_style="cyan"))

        table = Table()
        table.add_column("Description")
        table.add_column("Qty", justify="center")
        table.add_column("Rate", justify="right")
        table.add_column("Amount", justify="right")
        for item in inv.items:
            table.add_row(item.description, format_quantity(item.quantity),
                          format_currency(item.rate), format_currency(item.amount))
        table.add_section()
        table.add_row("[bold]Total[/bold]", "", "", f"[bold]{format_currency(inv.total)}[/bold]")
        self.console.print(table)

    async def _cmd_pdf(self, arg: str):
        """/pdf <number> [path]: Save the invoice PDF."""
        parts = arg.split(maxsplit=1)
        if not parts:
            self.console.print("[red]Usage: /pdf <invoice number> \\[path][/red]")
            return
        inv = self.service.find_invoice_by_number(parts[0])
        artifact = self.service.render(inv.id)
        target = Path(parts[1]) if len(parts) > 1 else Path.cwd()
        path = artifact.save(target)
        self.console.print(f"[green]Saved {path} ({artifact.page_count} page(s))[/green]")

    async def _cmd_report(self, arg: str):
        """/report [monthly|quarterly|yearly|ytd]: Profit & loss."""
        period = arg.lower() if arg else ReportPeriod.YTD
        report = self.service.report(period)

        table = Table(title=f"Profit & Loss: {report.label}")
        table.add_column("Line")
        table.add_column("Amount", justify="right")
        table.add_row("[bold]Total Income[/bold]", format_currency(report.total_income))
        for category, amount in report.expense_categories.items():
            table.add_row(f"  {category}", format_currency(amount))
        table.add_row("Total Expenses", format_currency(report.total_expenses))
        table.add_section()
        style = "green" if report.net_profit >= 0 else "red"
        table.add_row("[bold]Net Profit[/bold]",
                      f"[bold {style}]{format_currency(report.net_profit)}[/bold {style}]")
        self.console.print(table)

    async def _cmd_events(self, arg: str):
        """/events [count]: Recent ledger activity."""
        count = int(arg) if arg.isdigit() else 20
        events = self.service.events.get_recent(count)
        if not events:
            self.console.print("[dim]No activity yet.[/dim]")
            return
        table = Table(title="Recent Activity")
        table.add_column("Time", style="dim")
        table.add_column("Severity")
        table.add_column("Category")
        table.add_column("Message")
        for ev in events:
            table.add_row(ev["timestamp"][11:19], ev["severity"], ev["category"], ev["message"])
        self.console.print(table)

    async def _cmd_refresh(self, arg: str):
        """/refresh [clear]: Reload everything from the remote store."""
        if arg.strip().lower() == "clear":
            removed = self.service.clear_cache()
            self.console.print(f"[dim]Removed {removed} cached file(s).[/dim]")
        with self.console.status("[bold cyan]Refreshing...[/bold cyan]"):
            counts = await self.service.load(force_refresh=True)
        self.console.print(
            f"[green]Loaded {counts['invoices']} invoices, {counts['clients']} builders, "
            f"{counts['expenses']} expenses.[/green]"
        )

    async def _cmd_help(self, _arg: str):
        """/help: Show all available slash commands."""
        table = Table(title="Commands")
        table.add_column("Command", style="bold cyan")
        table.add_column("Description")

        commands = [
            ("/invoices [status]", "List invoices (draft, sent, paid or all)"),
            ("/clients", "List builders"),
            ("/expenses", "List expenses"),
            ("/show <number>", "Show one invoice and its line items"),
            ("/pdf <number> [path]", "Save the invoice PDF (default: current directory)"),
            ("/report [period]", "Profit & loss: monthly, quarterly, yearly or ytd"),
            ("/events [count]", "Recent ledger activity"),
            ("/refresh [clear]", "Reload from the server (clear drops the disk cache first)"),
            ("/help", "Show this help table"),
            ("/quit, /exit", "Exit the terminal"),
        ]
        for cmd, desc in commands:
            table.add_row(escape(cmd), desc)
        self.console.print(table)

    async def _cmd_quit(self, _arg: str):
        """/quit or /exit: Trigger clean shutdown."""
        raise SystemExit

    # -----------------------------------------------------------------------
    # Banner & shutdown
    # -----------------------------------------------------------------------

    def _print_banner(self):
        stats = self.service.stats()
        lines = [
            f"[bold]CBS Books: {self.service.sender.name}[/bold]",
            "",
            f"Invoices: {len(self.service.invoices())}  |  "
            f"Builders: {len(self.service.clients())}  |  "
            f"Outstanding: {format_currency(stats.outstanding)}",
            "",
            "[dim]Type /help for commands.[/dim]",
        ]
        self.console.print(Panel("\n".join(lines), border_style="bright_blue", padding=(1, 2)))

    async def _shutdown(self):
        await self.service.close()
        self.console.print("[dim]Goodbye.[/dim]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def main():
    """Launch the CBS Books terminal."""
    terminal = BooksTerminal()
    await terminal.run()


if __name__ == "__main__":
    asyncio.run(main())
