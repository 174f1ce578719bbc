# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Databases and users on MySQL and PostgreSQL servers.

Login parameters, common for both kinds:
    server               mysql (default) or postgres
    login_host, port     default: the local socket
    login_user
    login_password_ref   secret reference; without it, MySQL uses the
                         client defaults and PostgreSQL uses ~/.pgpass
"""
import logging
from typing import NamedTuple

from converge._db_servers import ServerSpec
from converge._db_servers import check_privileges
from converge._exceptions import ReconcileError
from converge._facts import DatabaseFacts
from converge._facts import GrantFacts
from converge._reconciler import Context
from converge._reconciler import Reconciler
from converge._reconciler import applying
from converge._reconciler import choice
from converge._reconciler import must_apply
from converge._reconciler import no_op
from converge._reconciler import string

_logger = logging.getLogger(__name__)


def _server_spec(parameters, context: Context) -> ServerSpec:
    engine = choice(parameters, 'server', ['mysql', 'postgres'], 'mysql')
    port = string(parameters, 'port')
    if port is not None:
        try:
            port = int(port)
        except ValueError:
            raise ReconcileError(f"Parameter 'port' must be a number, got {port!r}")
    password_ref = string(parameters, 'login_password_ref')
    if password_ref is None:
        password = None
    else:
        password = context.secrets.resolve(password_ref, "database login password")
    return ServerSpec(
        engine,
        string(parameters, 'login_host'),
        port,
        string(parameters, 'login_user'),
        password,
        )


def _server_resource(parameters) -> str:
    engine = parameters.get('server', 'mysql')
    location = parameters.get('login_host', 'local')
    if 'port' in parameters:
        location = f"{location}:{parameters['port']}"
    return f'{engine}:{location}'


class Database(NamedTuple):
    server: ServerSpec
    name: str


class DbCreateReconciler(Reconciler):
    kind = 'db_create'
    required = ('name',)

    def desired(self, parameters, context):
        return Database(_server_spec(parameters, context), string(parameters, 'name'))

    def resource(self, parameters):
        return f"database:{_server_resource(parameters)}:{parameters['name']}"

    def probe(self, context, desired: Database):
        return context.probe.database(desired.server, desired.name)

    def reconcile(self, desired: Database, probed: DatabaseFacts):
        if probed.exists:
            return no_op(f"database {desired.name} exists")
        return must_apply(f"create database {desired.name}")

    def apply(self, context, desired: Database, probed: DatabaseFacts):
        with applying(f"database {desired.name}"):
            context.database_servers(desired.server).create_database(desired.name)
        _logger.info("%s: database %s created", context.host.name, desired.name)


class Grant(NamedTuple):
    server: ServerSpec
    user: str
    password: str
    privileges: str
    host_pattern: str
    database: str

    def __repr__(self):
        return (
            f'Grant({self.server!r}, {self.user!r}, password=********, '
            f'{self.privileges!r}, {self.host_pattern!r}, {self.database!r})')


class DbUserGrantReconciler(Reconciler):
    """Create the user if missing and grant if there is no grant yet.

    Existing grants are not compared with the desired privileges: a user
    that has SELECT on the database does not get INSERT on a later run.
    PostgreSQL has no host patterns and no grants on all databases:
    host_pattern is ignored there and database is required.
    Privileges "USAGE" alone are satisfied by the user existing.
    """

    kind = 'db_user_grant'
    required = ('user', 'password_ref', 'privileges')

    def desired(self, parameters, context):
        privileges = string(parameters, 'privileges')
        try:
            check_privileges(privileges)
        except ValueError as e:
            raise ReconcileError(str(e))
        server = _server_spec(parameters, context)
        database = string(parameters, 'database', '*')
        if server.engine == 'postgres' and database == '*':
            raise ReconcileError("PostgreSQL grants need parameter 'database'")
        user = string(parameters, 'user')
        return Grant(
            server,
            user,
            context.secrets.resolve(string(parameters, 'password_ref'), f"password of user {user!r}"),
            privileges,
            string(parameters, 'host_pattern', 'localhost'),
            database,
            )

    def resource(self, parameters):
        host_pattern = parameters.get('host_pattern', 'localhost')
        return f"db-user:{_server_resource(parameters)}:{parameters['user']}@{host_pattern}"

    def probe(self, context, desired: Grant):
        return context.probe.grant(desired.server, desired.user, desired.host_pattern, desired.database)

    def reconcile(self, desired: Grant, probed: GrantFacts):
        account = f"{desired.user}@{desired.host_pattern}"
        if not probed.user_exists:
            return must_apply(f"create user {account}, grant {desired.privileges} on {desired.database}")
        if desired.privileges.strip().upper() == 'USAGE':
            # USAGE means no privileges: no grant row to look for.
            return no_op(f"{account} exists, USAGE grants nothing more")
        if not probed.grant_exists:
            return must_apply(f"grant {desired.privileges} on {desired.database} to {account}")
        return no_op(f"{account} has a grant on {desired.database}")

    def apply(self, context, desired: Grant, probed: GrantFacts):
        server = context.database_servers(desired.server)
        with applying(f"user {desired.user}@{desired.host_pattern}"):
            if not probed.user_exists:
                server.create_user(desired.user, desired.host_pattern, desired.password)
                _logger.info("%s: user %s created", context.host.name, desired.user)
            if not probed.grant_exists:
                server.grant(desired.user, desired.host_pattern, desired.privileges, desired.database)
                _logger.info("%s: %s granted to %s", context.host.name, desired.privileges, desired.user)
