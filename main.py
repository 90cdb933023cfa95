#!/usr/bin/env python3
"""
authgraph -- Identity graph store and credential verifier.

Usage:
  python main.py init-db
  python main.py init-db --drop
  python main.py demo
  python main.py demo --db-url sqlite:///demo.db

Environment variables:
  GRAPH_DB_URL    SQLAlchemy URL of the graph store (default: graph/authgraph.db)
  BCRYPT_ROUNDS   bcrypt cost factor for new password hashes (default: 12)
  LOG_LEVEL       root log level (default: INFO)

The HTTP API is served separately: uvicorn api.main:app
"""

import argparse
import logging
import sys
from typing import Optional

from core.config import get_settings
from core.errors import IdentityError
from graph.store import GraphStore
from identity.association import link
from identity.models import (
    Authenticator,
    AuthenticatorType,
    Entity,
    Identifier,
    IdentifierType,
    Namespace,
    Scope,
    ScopeType,
    System,
)
from identity.passwords import hash_password
from identity.store import IdentityStores
from identity.verifier import CredentialVerifier

DEMO_SID = "testy"
DEMO_EMAIL = "test@test.com"
DEMO_PASSWORD = "test123"


def init_db(db_url: Optional[str], drop: bool) -> int:
    """Create the graph schema, optionally wiping every node first."""
    graph = GraphStore(db_url)
    try:
        if drop:
            graph.drop_all()
            print("  Graph store dropped and recreated.")
        else:
            print("  Graph schema is up to date.")
    finally:
        graph.close()
    return 0


def run_demo(db_url: Optional[str]) -> int:
    """Build one account end to end and exercise the login checks against it."""
    stores = IdentityStores(GraphStore(db_url))
    try:
        if stores.entities.find_by_sid(DEMO_SID) is not None:
            print(f"  [!] Entity '{DEMO_SID}' already exists. Run 'python main.py init-db --drop' first.")
            return 1

        entity = stores.entities.create(Entity.new(sid=DEMO_SID, display_name="Test Testy"), ("uid", "guid", "sid"))
        print(f"  Entity         {entity.uid}  sid={entity.sid}")

        identifier = stores.identifiers.create(
            Identifier(identifier_type=IdentifierType.email, value=DEMO_EMAIL).add_entity(entity),
            ("uid", "identifier_type", "value"),
        )
        print(f"  Identifier     {identifier.uid}  {identifier.identifier_type.value}={identifier.value}")

        system = stores.systems.create(System.new(name="test"), ("uid", "guid", "name"))
        print(f"  System         {system.uid}  guid={system.guid} name={system.name}")
        link(stores, system, entity)

        authenticator = stores.authenticators.create(
            Authenticator(authenticator_type=AuthenticatorType.email_password, value=hash_password(DEMO_PASSWORD))
            .add_entity(entity)
            .add_system(system)
            .add_identifier(identifier),
            ("uid", "authenticator_type"),
        )
        print(f"  Authenticator  {authenticator.uid}  {authenticator.authenticator_type.value}")

        namespace = stores.namespaces.create(Namespace.new(name="grafana").add_system(system), ("uid", "guid", "name"))
        print(f"  Namespace      {namespace.uid}  name={namespace.name}")

        scope = stores.scopes.create(
            Scope.new(name="admin", scope_type=ScopeType.group).add_namespace(namespace),
            ("uid", "guid", "name", "scope_type"),
        )
        link(stores, scope, entity)
        print(f"  Scope          {scope.uid}  name={scope.name} type={scope.scope_type.value}")

        verifier = CredentialVerifier(stores)
        email = Identifier(identifier_type=IdentifierType.email, value=DEMO_EMAIL)
        checks = (
            ("correct password", DEMO_PASSWORD, system.guid, True),
            ("wrong password", "wrongpass", system.guid, False),
            ("other system", DEMO_PASSWORD, System.new().guid, False),
        )
        print()
        failures = 0
        for label, secret, guid, expected in checks:
            candidate = Authenticator(authenticator_type=AuthenticatorType.email_password, value=secret)
            result = verifier.login(candidate, email, System(guid=guid))
            mark = "ok" if result is expected else "UNEXPECTED"
            failures += result is not expected
            print(f"  login ({label}): {result}  [{mark}]")
        return 1 if failures else 0
    finally:
        stores.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="authgraph",
        description="Identity graph store and credential verifier.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db-url",
        metavar="URL",
        help="SQLAlchemy URL of the graph store (overrides GRAPH_DB_URL)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the graph schema")
    init_parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop every node, scalar and edge before recreating the schema",
    )
    subparsers.add_parser("demo", help="Create a sample account and run login checks")

    args = parser.parse_args()

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        if args.command == "init-db":
            code = init_db(args.db_url, args.drop)
        else:
            code = run_demo(args.db_url)
    except IdentityError as exc:
        print(f"  [!] {exc.code}: {exc.message}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
