#!/usr/bin/env python3
"""
Xeno CRM - Interactive Menu Launcher
Run this file to access all CRM commands through a simple menu.

Usage:
    python main.py
"""

import subprocess
import sys
import os

# Run the CLI as a module from the project root so the xenocrm package resolves
ROOT = os.path.dirname(os.path.abspath(__file__))
CRM = [sys.executable, "-m", "xenocrm.cli.main"]


def run(args: list[str]):
    """Run one CLI command in a child process, then pause before redrawing the menu."""
    print()
    completed = subprocess.run(CRM + args, cwd=ROOT)
    if completed.returncode:
        print(f"\n  (command exited with status {completed.returncode})")
    print()
    input("  Press Enter to return to menu...")


def prompt(label: str, required: bool = True) -> str:
    value = input(f"  {label}: ").strip()
    while required and not value:
        print("  (a value is needed here)")
        value = input(f"  {label}: ").strip()
    return value


def prompt_optional(label: str) -> str:
    return prompt(f"{label} [Enter to skip]", required=False)


def clear():
    subprocess.run(["cls"] if os.name == "nt" else ["clear"], shell=os.name == "nt")


# =============================================================================
# COMMAND HANDLERS
# =============================================================================

def initdb():
    run(["initdb"])

def customers_list():
    args = ["customers", "list"]
    s = prompt_optional("Minimum spend")
    v = prompt_optional("Minimum visits")
    p = prompt_optional("Page (default: 1)")
    if s: args += ["--min-spend", s]
    if v: args += ["--min-visits", v]
    if p: args += ["--page", p]
    run(args)

def customers_add():
    run(["customers", "add"])

def customers_import():
    path = prompt("JSON file with customer records")
    run(["customers", "import", path])

def orders_add():
    cid = prompt("Customer ID")
    amount = prompt("Amount")
    args = ["orders", "add", cid, amount]
    d = prompt_optional("Order date YYYY-MM-DD")
    if d: args += ["--date", d]
    run(args)

def segment_preview():
    rules = prompt('Rules JSON (e.g. {"total_spend": {"gt": 5000}})')
    run(["segment", "preview", rules])

def segment_translate():
    text = prompt("Describe the audience")
    args = ["segment", "translate", text, "--preview"]
    no_ai = input("  Keyword matching only, no AI? (y/N): ").strip().lower()
    if no_ai == "y": args += ["--no-ai"]
    run(args)

def campaigns_create():
    name = prompt("Campaign name")
    args = ["campaigns", "create", name]
    rules = prompt_optional("Rules JSON")
    if rules:
        args += ["--rules", rules]
    else:
        args += ["--describe", prompt("Describe the audience")]
    m = prompt_optional("Message template, {name} is replaced")
    if m: args += ["--message", m]
    run(args)

def campaigns_list():
    run(["campaigns", "list"])

def campaigns_show():
    cid = prompt("Campaign ID")
    run(["campaigns", "show", cid])

def campaigns_summary():
    cid = prompt("Campaign ID")
    run(["campaigns", "summary", cid])

def ai_messages():
    objective = prompt("Campaign objective")
    args = ["ai", "messages", objective]
    audience = prompt_optional("Audience")
    if audience: args += ["--audience", audience]
    run(args)


# =============================================================================
# MENU LAYOUT
# =============================================================================

MENU = [
    ("SETUP", [
        ("Create database tables",       initdb),
    ]),
    ("CUSTOMERS", [
        ("List customers",               customers_list),
        ("Add customer",                 customers_add),
        ("Import customers (JSON)",      customers_import),
        ("Record order",                 orders_add),
    ]),
    ("SEGMENTS", [
        ("Preview audience rules",       segment_preview),
        ("Describe audience in English", segment_translate),
    ]),
    ("CAMPAIGNS", [
        ("Create & deliver campaign",    campaigns_create),
        ("List campaigns",               campaigns_list),
        ("Show campaign",                campaigns_show),
        ("Campaign summary (AI)",        campaigns_summary),
        ("Suggest messages (AI)",        ai_messages),
    ]),
]


def print_menu() -> dict:
    """Draw the menu; returns {number: handler} for the entries shown."""
    clear()
    rule = "=" * 50
    print(f"{rule}\n   XENO CRM - COMMAND CENTRE\n{rule}")

    handlers = [handler for _, commands in MENU for _, handler in commands]
    n = 0
    for section, commands in MENU:
        print(f"\n  {section}\n  {'-' * len(section)}")
        for label, _ in commands:
            n += 1
            print(f"  {n:>2}.  {label}")

    print(f"\n{rule}\n   0.  Exit\n{rule}")
    return dict(enumerate(handlers, start=1))


def main():
    while True:
        numbering = print_menu()

        try:
            choice = input("\n  Select a command: ").strip().lower()
        except (KeyboardInterrupt, EOFError):
            choice = "0"

        if choice in ("0", "q", "quit", "exit"):
            print("\n  Goodbye!\n")
            return

        handler = numbering.get(int(choice)) if choice.isdigit() else None
        if handler is None:
            print(f"\n  Not a menu entry: {choice or '(nothing)'}")
            input("  Press Enter to continue...")
            continue

        clear()
        handler()


if __name__ == "__main__":
    main()
