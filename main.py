import asyncio
import sys
from decimal import Decimal, InvalidOperation

import aiohttp
import questionary
from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from tradesync.config import load_config
from tradesync.connection import ConnectionController
from tradesync.logger import AsyncAuditLogger, setup_console_logger
from tradesync.models import OrderRequest, OrderType, Side
from tradesync.orders import OrderLifecycleClient
from tradesync.providers import BinanceApiProvider, build_providers
from tradesync.resolver import DataSourceResolver
from tradesync.rest import TradingApiClient
from tradesync.state import TradingState

PROVIDER_CHOICES = ['backend', 'binance', 'coingecko']
MODES = {'Watch dashboard': 'dashboard', 'Order ticket': 'ticket'}

# --- UI HELPER FUNCTIONS ---

def startup_selection(config):
    """Interactive CLI to pick the symbol and the market data chain."""
    print("\n📈 TRADESYNC TERMINAL \n")
    symbol = questionary.select(
        "Select market:", choices=config['system']['supported_symbols'],
        default=config['system']['symbol']).ask()
    if not symbol:
        print("No market selected. Exiting.")
        sys.exit()

    providers = questionary.checkbox(
        "Market data sources (priority order, offline default always last):",
        choices=[questionary.Choice(p, checked=p in config['market_data']['providers'])
                 for p in PROVIDER_CHOICES]).ask()

    mode = questionary.select("Mode:", choices=list(MODES)).ask()
    return symbol, providers or [], MODES.get(mode, 'dashboard')


def order_request_from_answers(symbol: str, answers: dict) -> OrderRequest:
    """Builds an OrderRequest from order-ticket answers. Raises ValueError on bad input."""
    order_type = OrderType(answers['type'])
    try:
        quantity = Decimal(str(answers['quantity']).strip())
        price = Decimal(str(answers['price']).strip()) if order_type is OrderType.LIMIT else None
    except InvalidOperation:
        raise ValueError("quantity and price must be numbers")
    if not quantity.is_finite() or quantity <= 0:
        raise ValueError("quantity must be positive")
    if price is not None and (not price.is_finite() or price <= 0):
        raise ValueError("price must be positive")
    return OrderRequest(symbol=symbol, side=Side(answers['side']), type=order_type,
                        quantity=quantity, price=price)


def generate_dashboard(state: TradingState, connection_status: str):
    """Market header, top of book, tape and the user's open orders."""
    m = state.market
    if m:
        color = "green" if m.change_24h >= 0 else "red"
        header = (f"[bold]{state.symbol}[/bold]  ${m.price:,.2f}  "
                  f"[{color}]{m.change_24h:+,.2f} ({m.change_pct_24h:+.2f}%)[/{color}]  "
                  f"Vol {m.volume_24h:,.0f}  H {m.high_24h:,.2f}  L {m.low_24h:,.2f}")
    else:
        header = f"[bold]{state.symbol}[/bold]  [red]no market data[/red]"
    link = "[green]● LIVE[/green]" if state.connected else f"[yellow]● {connection_status.upper()}[/yellow]"
    header += f"\nSource: {state.data_source}   Channel: {link}"

    book = Table(title="📚 Order Book")
    book.add_column("Bid Qty", justify="right", style="green")
    book.add_column("Bid", justify="right", style="green")
    book.add_column("Ask", justify="right", style="red")
    book.add_column("Ask Qty", justify="right", style="red")
    for i in range(min(10, max(len(state.order_book.bids), len(state.order_book.asks)))):
        bid = state.order_book.bids[i] if i < len(state.order_book.bids) else None
        ask = state.order_book.asks[i] if i < len(state.order_book.asks) else None
        book.add_row(
            f"{bid.quantity:.4f}" if bid else "", f"{bid.price:,.2f}" if bid else "",
            f"{ask.price:,.2f}" if ask else "", f"{ask.quantity:.4f}" if ask else "")

    tape = Table(title="🧾 Trades")
    tape.add_column("Time")
    tape.add_column("Price", justify="right")
    tape.add_column("Qty", justify="right")
    for t in state.trades[:15]:
        style = "green" if t.side.value == "buy" else "red"
        tape.add_row(t.occurred_at.strftime("%H:%M:%S"), f"[{style}]{t.price:,.2f}[/{style}]", f"{t.quantity:.4f}")

    orders = Table(title="🗂️ My Orders")
    for col in ("ID", "Side", "Type", "Price", "Qty", "Filled", "Status"):
        orders.add_column(col)
    for o in state.orders[:10]:
        orders.add_row(o.id[:8], o.side.value, o.type.value,
                       f"{o.price:,.2f}" if o.price is not None else "MKT",
                       str(o.quantity), str(o.filled_quantity), o.status.value)

    layout = Layout()
    layout.split_column(Layout(name="top", size=4), Layout(name="middle"), Layout(name="bottom", size=14))
    layout["top"].update(Panel(header))
    layout["middle"].split_row(Layout(Panel(book)), Layout(Panel(tape)))
    layout["bottom"].update(Panel(Group(orders)))
    return layout

# --- MAIN CONTROLLER ---

class TradingTerminal:
    def __init__(self, config: dict, symbol: str, provider_keys, mode: str = 'dashboard'):
        self.config = config
        self.config['market_data']['providers'] = list(provider_keys)
        self.symbol = symbol
        self.mode = mode
        self.logger = setup_console_logger("TradeSync", config['system']['log_level'])
        self.audit_log = AsyncAuditLogger(config['audit']['order_log'])
        self._session = None

    async def run(self):
        cfg = self.config
        self._session = aiohttp.ClientSession()
        await self.audit_log.start()

        state = TradingState(
            self.symbol, self.logger,
            user_id=cfg['system']['user_id'],
            trade_limit=cfg['state']['trade_tape_limit'],
            history_limit=cfg['state']['trade_history_limit'])
        providers = build_providers(cfg, self._session, self.symbol)
        resolver = DataSourceResolver(providers, self.logger)
        api = TradingApiClient(self._session, cfg['server']['rest_base_url'], self.logger,
                               timeout=cfg['server']['request_timeout_seconds'])
        controller = ConnectionController(
            cfg['server']['ws_url'], state, self.logger, session=self._session,
            reconnect_delay=cfg['server']['reconnect_delay_seconds'],
            heartbeat=cfg['server']['heartbeat_seconds'])
        orders = OrderLifecycleClient(api, state, self.logger, audit_log=self.audit_log)

        try:
            print("Bootstrapping market state...")
            await state.initialize(resolver, api, controller)

            if self.mode == 'ticket':
                await self.order_ticket(state, orders, controller)
                return

            console = Console()
            with Live(console=console, refresh_per_second=4) as live:
                while True:
                    live.update(generate_dashboard(state, controller.status.value))
                    await asyncio.sleep(0.25)
        finally:
            print("Shutting down resources...")
            await controller.disconnect()
            for p in providers:
                if isinstance(p, BinanceApiProvider):
                    await p.close()
            await self.audit_log.stop()
            await self._session.close()

    async def order_ticket(self, state: TradingState, orders: OrderLifecycleClient, controller):
        """Prompt loop for placing and cancelling orders against the live state."""
        console = Console()
        while True:
            console.print(generate_dashboard(state, controller.status.value))
            action = await questionary.select(
                "Action:", choices=["Place order", "Cancel order", "Refresh", "Quit"]).ask_async()
            if action in (None, "Quit"):
                return
            if action == "Refresh":
                continue

            if action == "Place order":
                answers = await questionary.form(
                    side=questionary.select("Side:", choices=[s.value for s in Side]),
                    type=questionary.select("Type:", choices=[t.value for t in OrderType]),
                    quantity=questionary.text("Quantity:"),
                    price=questionary.text("Limit price (ignored for market):", default="0"),
                ).ask_async()
                if not answers:
                    continue
                try:
                    request = order_request_from_answers(self.symbol, answers)
                except ValueError as e:
                    console.print(f"[red]Invalid order: {e}[/red]")
                    continue
                result = await orders.submit(request)
            else:
                if not state.orders:
                    console.print("[yellow]No open orders.[/yellow]")
                    continue
                order_id = await questionary.select(
                    "Cancel which order?",
                    choices=[questionary.Choice(
                        f"{o.id[:8]} {o.side.value} {o.quantity} @ {o.price if o.price is not None else 'MKT'}",
                        value=o.id) for o in state.orders]).ask_async()
                if not order_id:
                    continue
                result = await orders.cancel(order_id)

            if result.success:
                console.print("[green]✅ Done[/green]")
            else:
                console.print(f"[red]❌ {result.error}[/red]")


if __name__ == "__main__":
    config = load_config("config.yaml")
    try:
        sel_symbol, sel_providers, sel_mode = startup_selection(config)
        terminal = TradingTerminal(config, sel_symbol, sel_providers, sel_mode)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(terminal.run())
    except KeyboardInterrupt:
        print("\n🛑 Terminal stopped by user.")
        sys.exit()
