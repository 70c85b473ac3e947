from __future__ import annotations

import asyncio
import shutil
import sys
from typing import List

from client.errors import FleetApiError, TabLimitReached
from .state import DashboardState

CLEAR = "\x1b[2J\x1b[H"

HELP = (
    "/box <id>  /viewer <id>  /start <box>  /stop <box>  "
    "/tab add|close N|select N|shot|lowq  /stream <url>  /check  /quit"
)


def fmt_row(cols, widths):
    out = []
    for c, w in zip(cols, widths):
        s = (c if c is not None else "")[:w].ljust(w)
        out.append(s)
    return " ".join(out)


def _sev(value) -> str:
    return value.value if value is not None else "-"


def _tab_cell(sync, viewer) -> str:
    active = sync.store.active_tab_index(viewer.id)
    cell = f"{len(viewer.tabs)}/{viewer.max_tabs}"
    if active is not None:
        cell += f" @{active}"
    return cell


def render_screen(sync, dbstate: DashboardState, cols: int = 120) -> List[str]:
    """Build the dashboard as plain lines; the draw loop only prints them."""

    store = sync.store
    rule = "-" * cols
    lines = ["FleetSync Dashboard - Ctrl+C to exit".ljust(cols), rule]

    st = sync.stats()
    lines.append(
        f"boxes {st.active_boxes}/{st.total_boxes} running, {st.error_boxes} error | "
        f"viewers {st.active_viewers}/{st.total_viewers} running, {st.error_viewers} error"[:cols]
    )
    metrics = store.system()
    if metrics is not None:
        mem = metrics.system.memory
        load = " ".join(f"{x:.2f}" for x in metrics.system.load_avg[:3])
        lines.append(
            f"host up {int(metrics.system.uptime)}s  mem used {mem.used or 0:.0f}/"
            f"{mem.total or 0:.0f}  load {load or '-'}"[:cols]
        )
    lines.append(rule)

    headers = ["id", "name", "status", "ip", "location", "viewers", "sev", "err"]
    widths = [10, 16, 9, 15, 12, 7, 8, 30]
    lines.append(fmt_row(headers, widths))
    for b in store.boxes()[:15]:
        mark = ">" if b.id == dbstate.box_id else ""
        row = [
            mark + b.id,
            b.name,
            b.status.value,
            b.ip_address or "",
            b.location or "",
            str(len(b.viewers)),
            _sev(sync.box_severity(b.id)),
            store.error("box", b.id) or b.error or "",
        ]
        lines.append(fmt_row(row, widths))
    lines.append(rule)

    headers = ["id", "box", "status", "tabs", "stream", "sev", "err"]
    widths = [10, 10, 9, 8, 30, 8, 30]
    lines.append(fmt_row(headers, widths))
    for v in store.viewers()[:15]:
        mark = ">" if v.id == dbstate.viewer_id else ""
        row = [
            mark + v.id,
            store.box_of(v.id) or "",
            v.status.value,
            _tab_cell(sync, v),
            v.stream_url or "",
            _sev(sync.viewer_severity(v.id)),
            store.error("viewer", v.id) or v.error or "",
        ]
        lines.append(fmt_row(row, widths))

    if dbstate.viewer_id and store.viewer(dbstate.viewer_id):
        manager = sync.tabs(dbstate.viewer_id)
        lines.append(rule)
        lines.append(f"Tabs of {dbstate.viewer_id}:")
        for i, tab in enumerate(manager.tabs):
            marker = "*" if i == manager.active_index else " "
            lines.append(f" {marker}[{i}] {tab.status or '?'} {tab.url or ''}"[:cols])
        shot = manager.active_screenshot()
        if shot:
            lines.append(f" screenshot: {shot}"[:cols])
        for entry in store.logs(dbstate.viewer_id)[-5:]:
            lines.append(f" [{entry.level.value}] {entry.message}"[:cols])

    lines.append(rule)
    selected = sync.chat.selected
    lines.append(f"Chat: {selected or '(no eligible stream)'}"[:cols])
    err = sync.chat.error()
    if err:
        lines.append(f" ! {err}"[:cols])
    for msg in sync.chat.messages()[-5:]:
        lines.append(f" {msg.username}: {msg.message}"[:cols])
    lines.append(rule)
    for note in dbstate.notices[-5:]:
        lines.append(f" {note}"[:cols])
    lines.append(HELP[:cols])
    return lines


async def _tab_command(sync, dbstate: DashboardState, args: List[str]) -> None:
    if not dbstate.viewer_id:
        dbstate.add_notice("[sys] open a viewer first: /viewer <id>")
        return
    manager = sync.tabs(dbstate.viewer_id)
    op = args[0] if args else ""
    if op == "add":
        index = await manager.add_tab()
        dbstate.add_notice(f"[sys] tab added, active {index}")
    elif op == "close" and len(args) == 2:
        index = await manager.close_tab(int(args[1]))
        dbstate.add_notice(f"[sys] tab {args[1]} closed, active {index}")
    elif op == "select" and len(args) == 2:
        manager.select(int(args[1]))
    elif op == "shot":
        await manager.take_screenshot()
        dbstate.add_notice("[sys] screenshot requested")
    elif op == "lowq":
        await manager.force_lowest_quality()
        dbstate.add_notice("[sys] lowest quality forced")
    else:
        dbstate.add_notice("[sys] usage: /tab add|close N|select N|shot|lowq")


async def handle_command(sync, dbstate: DashboardState, msg: str) -> bool:
    """Run one input line. Returns False when the user asked to quit."""

    parts = msg.split()
    if not parts:
        return True
    cmd, args = parts[0], parts[1:]
    try:
        if cmd == "/quit":
            return False
        elif cmd == "/box":
            dbstate.box_id = args[0] if args else None
            await sync.open_box(dbstate.box_id)
        elif cmd == "/viewer":
            dbstate.viewer_id = args[0] if args else None
            await sync.open_viewer(dbstate.viewer_id)
        elif cmd in ("/start", "/stop") and args:
            if cmd == "/start":
                await sync.start_box(args[0])
            else:
                await sync.stop_box(args[0])
            dbstate.add_notice(f"[sys] {cmd[1:]} requested for {args[0]}")
        elif cmd == "/tab":
            await _tab_command(sync, dbstate, args)
        elif cmd == "/stream" and args:
            sync.chat.select(args[0])
        elif cmd == "/check":
            await sync.trigger_resource_check()
            dbstate.add_notice("[sys] resource check triggered")
        else:
            dbstate.add_notice(f"[sys] unknown command: {msg}")
    except FleetApiError as e:
        dbstate.add_notice(f"[err] {e.message}")
    except TabLimitReached as e:
        dbstate.add_notice(f"[err] {e}")
    except (IndexError, KeyError, ValueError) as e:
        dbstate.add_notice(f"[err] {e}")
    return True


async def input_loop(sync, dbstate: DashboardState):
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    while True:
        line = await reader.readline()
        if not line:
            await asyncio.sleep(0.1)
            continue
        msg = line.decode(errors="replace").strip()
        if not msg:
            continue
        if not msg.startswith("/"):
            dbstate.add_notice(f"[sys] commands start with '/': {HELP}")
            continue
        if not await handle_command(sync, dbstate, msg):
            raise KeyboardInterrupt


async def draw_loop(sync, dbstate: DashboardState, refresh: float = 0.5):
    while True:
        cols = shutil.get_terminal_size((120, 40)).columns
        print(CLEAR, end="")
        for line in render_screen(sync, dbstate, cols):
            print(line)
        sys.stdout.flush()
        await asyncio.sleep(refresh)


async def run_tui(sync, refresh: float = 0.5):
    dbstate = DashboardState()
    tasks = [
        asyncio.create_task(draw_loop(sync, dbstate, refresh)),
        asyncio.create_task(input_loop(sync, dbstate)),
    ]
    try:
        await asyncio.gather(*tasks)
    except KeyboardInterrupt:
        pass
    finally:
        for t in tasks:
            t.cancel()
