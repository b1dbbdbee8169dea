"""
Entry point: `python -m cogbattery` or `cog-battery` script.
Wires all modules together.
"""
from __future__ import annotations


def run() -> None:
    # Disable pyglet event checking in background threads (prevents macOS crash)
    from psychopy import core
    core.checkPygletDuringWait = False

    import asyncio
    import random
    from datetime import datetime
    from pathlib import Path

    from psychopy import logging
    from psychopy.hardware import keyboard
    from rich.console import Console
    from rich.live import Live
    from rich.table import Table
    import rich.box

    from cogbattery import display, hardware, session
    from cogbattery.arbiter import InputArbiter
    from cogbattery.battery import BatteryScheduler
    from cogbattery.errors import PersistenceFailure
    from cogbattery.metrics import summarize_battery
    from cogbattery.records import CsvSessionStore, Outcome
    from cogbattery.responder import SimulatedParticipant

    # ── INITIALISE SESSION ───────────────────────────────────────────────────
    session_info = session.show_dialog()
    session_time = datetime.now()

    store = CsvSessionStore(Path("data"))
    session_id = store.create_session(session_info, session_time)

    # ── LOGGING ──────────────────────────────────────────────────────────────
    logging.LogFile(str(store.session_dir / "experiment.log"), level=logging.EXP)
    logging.console.setLevel(logging.WARNING)  # rich handles terminal output

    # ── RICH CONSOLE ─────────────────────────────────────────────────────────
    rcon = Console(stderr=True)
    rcon.print(
        f"[bold]Session:[/bold] [cyan]{session_id}[/cyan]  "
        f"kinds=[cyan]{', '.join(k.value for k in session_info.test_kinds)}[/cyan]  "
        f"conditions=[cyan]{', '.join(session_info.conditions)}[/cyan]  "
        f"seed=[cyan]{session_info.seed}[/cyan]  simulate=[cyan]{session_info.simulate}[/cyan]"
    )
    logging.exp(
        f"Session: {session_id}  kinds={[k.value for k in session_info.test_kinds]}  "
        f"conditions={session_info.conditions}  seed={session_info.seed}  simulate={session_info.simulate}"
    )

    # ── SCREEN & EVENT LOOP ──────────────────────────────────────────────────
    win_res, win = session.setup_screen()
    win.mouseVisible = False
    stimuli_obj = display.build_stimuli(win)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    presenter = display.ScreenPresenter(stimuli_obj, loop.time)

    # ── BUTTON BOX ───────────────────────────────────────────────────────────
    arbiter = InputArbiter()
    link = hardware.make_link(loop.time, loop, arbiter.on_raw_event)
    indicator = link if link is not None else presenter
    rcon.print(f"[bold]Input:[/bold] {'micro:bit' if link is not None else 'keyboard (A S D F)'}")

    rng = random.Random(session_info.seed)
    sink = presenter
    if session_info.simulate:
        sink = SimulatedParticipant(presenter, loop, arbiter.on_raw_event, rng=random.Random(session_info.seed))
        rcon.print("[bold yellow]Simulated participant is responding[/bold yellow]")

    # ── OPERATOR TABLE ───────────────────────────────────────────────────────
    table = Table(box=rich.box.SIMPLE_HEAD)
    table.add_column("Run")
    table.add_column("#", justify="right")
    table.add_column("Stimulus")
    table.add_column("Result")
    table.add_column("RT", justify="right")

    live_ref: dict[str, Live] = {}

    def on_trial_resolved(trial) -> None:
        rt_str = f"{trial.rt_ms:.0f} ms" if trial.rt_ms is not None else "—"
        if trial.outcome is Outcome.FALSE_START:
            result_cell = "[yellow]early[/yellow]"
        elif trial.correct:
            result_cell = "[green]correct[/green]"
        elif trial.outcome is Outcome.MISSED:
            result_cell = "[red]miss[/red]"
        else:
            result_cell = "[red]wrong[/red]"
        machine = scheduler.machine
        table.add_row(
            machine.run.run_id if machine is not None else "",
            str(trial.sequence),
            trial.stimulus.label if trial.stimulus is not None else "",
            result_cell,
            rt_str,
        )
        if "live" in live_ref:
            live_ref["live"].refresh()

    def on_run_finalized(run, metrics) -> None:
        mean = metrics["mean_rt_ms"]
        acc = metrics["accuracy"]
        live_ref["live"].console.print(
            f"[bold]Run {run.run_id} complete:[/bold] {metrics['total_trials']} trials  "
            f"mean RT=[cyan]{f'{mean:.0f} ms' if mean is not None else 'n/a'}[/cyan]  "
            f"accuracy=[cyan]{f'{acc:.0f}%' if acc is not None else 'n/a'}[/cyan]"
            + ("" if run.persisted else "  [bold red]NOT SAVED[/bold red]")
        )

    def on_battery_complete(runs) -> None:
        unsaved = scheduler.retry_unsaved()
        if unsaved:
            rcon.print(f"[bold red]Unsaved runs:[/bold red] {', '.join(r.run_id for r in unsaved)}")
        summary = summarize_battery(runs)
        try:
            store.complete_session(runs, summary)
        except PersistenceFailure as exc:
            logging.error(f"Session summary not saved: {exc}")
        rcon.print(summary.round(1).to_string())

    scheduler = BatteryScheduler(
        loop=loop,
        arbiter=arbiter,
        presenter=sink,
        indicator=indicator,
        store=store,
        rng=rng,
        on_trial_resolved=on_trial_resolved,
        on_run_finalized=on_run_finalized,
        on_battery_complete=on_battery_complete,
    )
    scheduler.configure(session_info.test_kinds, session_info.conditions)

    quit_requested = {"flag": False}

    def on_quit() -> None:
        quit_requested["flag"] = True
        scheduler.stop()

    kb = keyboard.Keyboard()
    kb_input = hardware.KeyboardInput(kb, loop.time, arbiter.on_raw_event, on_quit, scheduler.skip_break)

    # ── FRAME LOOP ───────────────────────────────────────────────────────────
    async def frame_loop() -> None:
        scheduler.start()
        while not scheduler.finished:
            presenter.draw()
            win.flip()
            # Key times come from the keyboard backend; micro:bit lines arrive via the reader thread
            kb_input.poll()
            # Timer callbacks run here
            await asyncio.sleep(0)
        if not quit_requested["flag"]:
            t_end = loop.time() + 3.0
            while loop.time() < t_end:
                presenter.draw()
                win.flip()
                await asyncio.sleep(0)

    # auto_refresh=False prevents a background timer thread during trials
    with Live(table, console=rcon, auto_refresh=False) as live:
        live_ref["live"] = live
        loop.run_until_complete(frame_loop())

    if quit_requested["flag"]:
        rcon.print("[bold yellow]Battery aborted by operator[/bold yellow]")

    # ── CLEANUP ──────────────────────────────────────────────────────────────
    if link is not None:
        link.close()
    loop.close()
    logging.flush()
    win.close()
    core.quit()


if __name__ == "__main__":
    run()
