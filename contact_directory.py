import argparse
import functools
import json
import logging
import os
import sys
import tempfile
from collections import UserDict
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Iterable

from dotenv import find_dotenv, load_dotenv
from openai import OpenAI, OpenAIError
# ────────────────────────────────────────────────────────────────────────────
# Rich console
# ────────────────────────────────────────────────────────────────────────────
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

log = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────────────
# Snapshot layout – labels kept compatible with existing annuaire.json files
# ────────────────────────────────────────────────────────────────────────────
DEFAULT_FILE = "annuaire.json"
FILE_ENV_VAR = "ANNUAIRE_FILE"

CONTACTS_KEY = "contacts"
NAME_KEY, GIVEN_NAME_KEY, PHONE_KEY = "nom", "prenom", "tel"


# ────────────────────────────────────────────────────────────────────────────
# Errors
# ────────────────────────────────────────────────────────────────────────────
class DirectoryError(Exception):
    """Base class for every failure the directory reports to the user."""


class LoadFailure(DirectoryError):
    pass


class PersistFailure(DirectoryError):
    pass


class ValidationError(DirectoryError, ValueError):
    pass


class DuplicateError(DirectoryError, ValueError):
    pass


class NotFoundError(DirectoryError, LookupError):
    pass


# ────────────────────────────────────────────────────────────────────────────
# Data model
# ────────────────────────────────────────────────────────────────────────────
class Field:
    def __init__(self, value: Optional[str]):  self.value = (value or "").strip()

    def __str__(self):                          return self.value


class Name(Field):
    def __init__(self, value: Optional[str]):
        super().__init__(value)
        if not self.value:
            raise ValidationError("Name cannot be empty.")


class GivenName(Field):  pass


class Phone(Field):
    def __init__(self, value: Optional[str]):
        super().__init__(value)
        if not self.value:
            raise ValidationError("Phone number cannot be empty.")


def make_key(name: Optional[str]) -> str:
    return (name or "").strip().lower()


@dataclass
class Contact:
    name: str
    given_name: str = ""
    phone: str = ""

    @property
    def key(self) -> str:
        return make_key(self.name)

    def __str__(self):
        return " ".join(p for p in (self.name, self.given_name) if p) + f" - {self.phone}"

    def to_dict(self) -> dict:
        return {NAME_KEY: self.name, GIVEN_NAME_KEY: self.given_name, PHONE_KEY: self.phone}

    @classmethod
    def from_dict(cls, raw) -> "Contact":
        if not isinstance(raw, dict):
            raise TypeError(f"contact record must be an object, got {type(raw).__name__}")
        values = {}
        for attr, label in (("name", NAME_KEY), ("given_name", GIVEN_NAME_KEY), ("phone", PHONE_KEY)):
            value = raw.get(label, "")
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise TypeError(f"field '{label}' must be a string, got {type(value).__name__}")
            values[attr] = value
        return cls(**values)


class Directory(UserDict):
    """Contacts keyed by lower-cased name; dict order is insertion order."""

    def find(self, name: str) -> Optional[Contact]:
        return self.data.get(make_key(name))

    def add(self, name: str, given_name: str = "", phone: str = "") -> Contact:
        if self.find(name) is not None:
            raise DuplicateError(f"A contact named '{name.strip()}' already exists.")
        contact = Contact(Name(name).value, GivenName(given_name).value, Phone(phone).value)
        self.data[contact.key] = contact
        return contact

    def delete(self, name: str) -> Contact:
        contact = self.data.pop(make_key(name), None)
        if contact is None:
            raise NotFoundError(f"No contact found with the name '{name}'.")
        return contact

    def update(self, name: str, given_name: str = "", phone: str = "") -> Contact:
        """
        Replace given name and/or phone of an existing contact.
        Blank arguments leave the matching field untouched; the name is never changed.
        """
        contact = self.find(name)
        if contact is None:
            raise NotFoundError(f"No contact found with the name '{name}'.")
        new_given = GivenName(given_name).value
        new_phone = Field(phone).value
        if new_given:
            contact.given_name = new_given
        if new_phone:
            contact.phone = new_phone
        return contact

    def list_contacts(self) -> List[Contact]:
        return list(self.data.values())

    # --- snapshot (de)serialisation ---
    @classmethod
    def from_records(cls, records: Iterable[Contact]) -> "Directory":
        directory = cls()
        for rec in records:
            if not rec.key:
                log.warning("contact without a name in snapshot, skipping it")
                continue
            if rec.key in directory.data:
                log.warning("duplicate contact '%s' in snapshot, keeping the first one", rec.name)
                continue
            directory.data[rec.key] = rec
        return directory

    @classmethod
    def from_snapshot(cls, payload) -> "Directory":
        if not isinstance(payload, dict):
            raise TypeError(f"snapshot must be an object, got {type(payload).__name__}")
        raw = payload.get(CONTACTS_KEY)
        if raw is None:
            return cls()
        if not isinstance(raw, list):
            raise TypeError(f"'{CONTACTS_KEY}' must be a list, got {type(raw).__name__}")
        return cls.from_records(Contact.from_dict(r) for r in raw)

    def to_snapshot(self) -> dict:
        return {CONTACTS_KEY: [c.to_dict() for c in self.data.values()]}


# ────────────────────────────────────────────────────────────────────────────
# Persistence
# ────────────────────────────────────────────────────────────────────────────
class DirectoryStore:
    """
    Reads and writes the whole directory as one JSON snapshot.

    There is no locking: two invocations racing on the same file lose
    updates (last writer wins), but a reader never sees a half-written file
    because save() renames a finished temp file over the target.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Directory:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.debug("no snapshot at %s, starting empty", self.path)
            return Directory()
        except (OSError, UnicodeDecodeError) as exc:
            raise LoadFailure(f"Cannot read {self.path}: {exc}") from exc
        try:
            directory = Directory.from_snapshot(json.loads(text))
        except (TypeError, ValueError, RecursionError) as exc:
            raise LoadFailure(f"Cannot parse {self.path}: {exc}") from exc
        log.debug("loaded %d contact(s) from %s", len(directory), self.path)
        return directory

    def save(self, directory: Directory) -> None:
        try:
            body = json.dumps(directory.to_snapshot(), ensure_ascii=False, indent=2) + "\n"
        except (TypeError, ValueError) as exc:
            raise PersistFailure(f"Cannot serialise the directory: {exc}") from exc
        try:
            self._atomic_write(body)
        except OSError as exc:
            raise PersistFailure(f"Cannot write {self.path}: {exc}") from exc
        log.debug("saved %d contact(s) to %s", len(directory), self.path)

    def _atomic_write(self, body: str) -> None:
        parent = self.path.parent
        parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".annuaire_", suffix=".json", dir=str(parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self.path)
        finally:
            Path(tmp_name).unlink(missing_ok=True)


def snapshot_path(cli_value: Optional[str] = None) -> Path:
    """--file beats ANNUAIRE_FILE beats ./annuaire.json."""
    raw = (cli_value or "").strip() or (os.getenv(FILE_ENV_VAR) or "").strip()
    return Path(os.path.expanduser(raw)) if raw else Path(DEFAULT_FILE)


# ────────────────────────────────────────────────────────────────────────────
# Command dictionaries
# ────────────────────────────────────────────────────────────────────────────
ACTION_DESC = {
    "add": "--name <Name> [--given-name <Given name>] --phone <Phone>",
    "list": "list every contact",
    "search": "--name <Name> – case-insensitive lookup",
    "delete": "--name <Name>",
    "update": "--name <Name> [--given-name <Given name>] [--phone <Phone>]",
}

ACTION_ALIASES = {
    "ajouter": "add",
    "lister": "list",
    "rechercher": "search",
    "supprimer": "delete",
    "modifier": "update",
}

EXAMPLES = [
    'contact-directory --action add --name "Dupont" --given-name "Jean" --phone "0123456789"',
    "contact-directory --action list",
    'contact-directory --action search --name "Dupont"',
    'contact-directory --action delete --name "Dupont"',
    'contact-directory --action update --name "Dupont" --given-name "Pierre" --phone "0987654321"',
]

ARG_SPEC = {
    "add": ("name", "phone"),
    "search": ("name",),
    "delete": ("name",),
    "update": ("name",),
}

MUTATING = {"add", "delete", "update"}


# ────────────────────────────────────────────────────────────────────────────
# GPT‑autocorrect helper (disabled without an API key)
# ────────────────────────────────────────────────────────────────────────────
@functools.lru_cache(maxsize=1)
def _openai_client() -> Optional[OpenAI]:
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        try:
            with open("key.txt", "r", encoding="utf-8") as f:
                key = f.read().strip()
        except OSError as e:
            log.debug("no usable key.txt: %s", e)
            return None
    return OpenAI(api_key=key) if key else None


def suggest_correction(user_input: str,
                       desc_map: dict) -> Optional[str]:
    """
    Ask GPT‑4o‑mini to guess a mistyped action.
    Returns the canonical action name or None.
    """
    client = _openai_client()
    if client is None:
        return None
    sys_prompt = (
            "You are a CLI assistant that fixes mistyped commands. "
            "User may write EN/FR with typos.\n\n"
            "Supported commands:\n" +
            "\n".join(desc_map.keys()) +
            "\n\nReturn ONLY the canonical command name or empty string."
    )
    try:
        resp = client.chat.completions.create(
            model="gpt-4o-mini",
            messages=[
                {"role": "system", "content": sys_prompt},
                {"role": "user", "content": user_input}
            ],
            temperature=0.0,
            max_tokens=6
        )
    except OpenAIError as e:
        log.warning("autocorrect unavailable: %s", e)
        return None
    guess = (resp.choices[0].message.content or "").strip().strip("\"'")
    return guess if guess in desc_map else None


# ────────────────────────────────────────────────────────────────────────────
# Utility helpers
# ────────────────────────────────────────────────────────────────────────────
def ok(msg): return f"[green]✔ {escape(msg)}[/]"


def show_contacts(contacts: List[Contact]):
    if not contacts:
        console.print("[dim]No contacts in the directory.[/]")
        return
    table = Table(title=f"Directory ({len(contacts)} contact(s))",
                  header_style="bold blue", expand=False)
    table.add_column("#", justify="right", style="bold cyan", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Given name")
    table.add_column("Phone", style="green", no_wrap=True)
    for i, c in enumerate(contacts, 1):
        table.add_row(str(i), escape(c.name), escape(c.given_name) or "—", escape(c.phone))
    console.print(table)


def show_contact(contact: Contact):
    title = f"{contact.name.upper()} {contact.given_name}".strip()
    console.print(Panel(f"[b]📞[/b] {escape(contact.phone) or '—'}", title=escape(title),
                        border_style="cyan"))


def help_msg():
    table = Table(title="\n📘 Available actions", header_style="bold blue")
    table.add_column("Action", style="bold deep_sky_blue1", no_wrap=True)
    table.add_column("Alias", style="dim", no_wrap=True)
    table.add_column("Usage", style="white")

    aliases = {v: k for k, v in ACTION_ALIASES.items()}
    for action, desc in ACTION_DESC.items():
        table.add_row(f"[green]{action}[/green]", aliases.get(action, ""), escape(desc))
    console.print(table)
    console.print("\n[bold]Examples:[/]")
    for line in EXAMPLES:
        console.print(f"  {line}", markup=False, highlight=False)


def normalize_action(raw: str) -> Optional[str]:
    action = (raw or "").strip().lower()
    action = ACTION_ALIASES.get(action, action)
    return action if action in ACTION_DESC else None


def missing_args(action: str, args) -> Optional[str]:
    missing = [f"--{name.replace('_', '-')}" for name in ARG_SPEC.get(action, ())
               if not getattr(args, name, "").strip()]
    if missing:
        return f"{' and '.join(missing)} required for '{action}'."
    if action == "update" and not (args.given_name.strip() or args.phone.strip()):
        return "At least one of --given-name or --phone is required for 'update'."
    return None


def input_error(fn):
    @functools.wraps(fn)
    def wrap(*a, **kw):
        try:
            return fn(*a, **kw)
        except PersistFailure as e:
            log.debug("save failed", exc_info=True)
            console.print(f"[red]{escape(str(e))}[/]\n[yellow]The change was not saved.[/]")
            return 1
        except DirectoryError as e:
            log.debug("action failed", exc_info=True)
            console.print(f"[red]{escape(str(e))}[/]")
            return 1

    return wrap


# ────────────────────────────────────────────────────────────────────────────
# Handlers
# ────────────────────────────────────────────────────────────────────────────
@input_error
def handle_action(action: str, args, store: DirectoryStore) -> int:
    directory = store.load()

    if action == "list":
        show_contacts(directory.list_contacts())
        return 0
    if action == "search":
        contact = directory.find(args.name)
        if contact is None:
            console.print(f"[yellow]No contact found with the name '{escape(args.name)}'.[/]")
            return 0
        show_contact(contact)
        return 0

    if action == "add":
        contact = directory.add(args.name, args.given_name, args.phone)
        message = f"Contact added: {contact}"
    elif action == "delete":
        contact = directory.delete(args.name)
        message = f"Contact '{contact.name}' deleted."
    elif action == "update":
        contact = directory.update(args.name, args.given_name, args.phone)
        message = f"Contact '{contact.name}' updated: {contact}"
    else:
        raise DirectoryError(f"Unknown action: {action}")

    store.save(directory)
    console.print(ok(message))
    return 0


# ────────────────────────────────────────────────────────────────────────────
# CLI
# ────────────────────────────────────────────────────────────────────────────
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="contact-directory",
        description="Manage a contact directory stored in a JSON file.",
    )
    parser.add_argument("--action", default="",
                        help="add, list, search, delete or update "
                             "(ajouter, lister, rechercher, supprimer, modifier)")
    parser.add_argument("--name", "--nom", dest="name", default="", help="contact name")
    parser.add_argument("--given-name", "--prenom", dest="given_name", default="", help="contact given name")
    parser.add_argument("--phone", "--tel", dest="phone", default="", help="phone number")
    parser.add_argument("--file", default=None,
                        help=f"snapshot file (default: ${FILE_ENV_VAR} or {DEFAULT_FILE})")
    parser.add_argument("--verbose", action="store_true", help="show debug logging")
    return parser.parse_args(argv)


def setup_logging(verbose: bool = False):
    log.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not any(isinstance(h, RichHandler) for h in log.handlers):
        log.addHandler(RichHandler(console=err_console, show_path=False))


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(find_dotenv(usecwd=True))
    args = parse_args(argv)
    setup_logging(args.verbose)

    if not args.action.strip():
        console.print("[red]You must specify an action with --action.[/]")
        help_msg()
        return 1

    action = normalize_action(args.action)
    if action is None:
        console.print(f"[red]Unknown action: {escape(args.action)}[/]")
        sug = suggest_correction(args.action, ACTION_DESC)
        if sug:
            console.print(f"Did you mean '[cyan]{sug}[/]'?")
        console.print("Available actions: " + ", ".join(ACTION_DESC))
        return 1

    problem = missing_args(action, args)
    if problem:
        console.print(f"[red]{problem}[/]")
        return 1

    store = DirectoryStore(snapshot_path(args.file))
    log.debug("action=%s snapshot=%s mutating=%s", action, store.path, action in MUTATING)
    return handle_action(action, args, store)


if __name__ == "__main__":
    sys.exit(main())
