# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import re
import threading
from abc import ABCMeta
from abc import abstractmethod
from subprocess import TimeoutExpired
from typing import Callable
from typing import Dict
from typing import NamedTuple
from typing import Optional

import psycopg2
from psycopg2 import sql

from host_access import CommandFailed
from host_access import Host

_logger = logging.getLogger(__name__)

_privileges_re = re.compile(r'[A-Za-z][A-Za-z _,]*')


class DatabaseServerError(Exception):
    pass


class ServerSpec(NamedTuple):
    """How to reach a database server; password is already resolved."""

    engine: str  # mysql or postgres
    login_host: Optional[str] = None
    port: Optional[int] = None
    login_user: Optional[str] = None
    login_password: Optional[str] = None

    def __repr__(self):
        password = None if self.login_password is None else '********'
        return (
            f'ServerSpec({self.engine!r}, {self.login_host!r}, {self.port!r}, '
            f'{self.login_user!r}, {password!r})')


def check_privileges(privileges: str) -> str:
    """Privileges are put into SQL as is: only words and commas.

    >>> check_privileges('SELECT, INSERT')
    'SELECT, INSERT'
    >>> check_privileges("ALL; DROP TABLE x")
    Traceback (most recent call last):
    ...
    ValueError: Invalid privileges: 'ALL; DROP TABLE x'
    """
    if not _privileges_re.fullmatch(privileges):
        raise ValueError(f"Invalid privileges: {privileges!r}")
    return privileges


class DatabaseServer(metaclass=ABCMeta):

    @abstractmethod
    def database_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def create_database(self, name: str):
        pass

    @abstractmethod
    def user_exists(self, user: str, host_pattern: str) -> bool:
        pass

    @abstractmethod
    def grant_exists(self, user: str, host_pattern: str, database: str) -> bool:
        """Any privilege of the user on the database; '*' means global."""
        pass

    @abstractmethod
    def create_user(self, user: str, host_pattern: str, password: str):
        pass

    @abstractmethod
    def grant(self, user: str, host_pattern: str, privileges: str, database: str):
        pass

    def close(self):
        pass


def _mysql_literal(value: str) -> str:
    r"""Quote string for MySQL in the default SQL mode.

    >>> print(_mysql_literal("it's a \\ test"))
    'it''s a \\ test'
    """
    return "'" + value.replace('\\', '\\\\').replace("'", "''") + "'"


def _mysql_identifier(value: str) -> str:
    return '`' + value.replace('`', '``') + '`'


class MysqlServer(DatabaseServer):
    """Use mysql client on the target host.

    SQL and the password go to stdin, so neither appears in the command
    line, in the process list or in the logs.
    """

    def __init__(self, host: Host, spec: ServerSpec):
        self._host = host
        self._spec = spec

    def __repr__(self):
        return f'<MysqlServer on {self._host.name}>'

    def _query(self, statement: str):
        args = ['--batch', '--skip-column-names']
        if self._spec.login_host is not None:
            args += ['--host', self._spec.login_host]
        if self._spec.port is not None:
            args += ['--port', str(self._spec.port)]
        if self._spec.login_user is not None:
            args += ['--user', self._spec.login_user]
        stdin = statement.encode() + b'\n'
        if self._spec.login_password is not None:
            stdin = self._spec.login_password.encode() + b'\n' + stdin
            mode = 'with-password'
        else:
            mode = 'without-password'
        try:
            result = self._host.run_script(
                '''
                if [ "$1" = with-password ]; then
                    IFS= read -r MYSQL_PWD
                    export MYSQL_PWD
                fi
                shift
                exec mysql "$@"
                ''',
                mode, *args,
                input=stdin,
                )
        except (CommandFailed, TimeoutExpired) as e:
            raise DatabaseServerError(f"{self!r}: {e}")
        return [line.split('\t') for line in result.stdout.decode().splitlines()]

    def database_exists(self, name):
        rows = self._query(
            'SELECT SCHEMA_NAME FROM information_schema.SCHEMATA '
            f'WHERE SCHEMA_NAME = {_mysql_literal(name)};')
        return bool(rows)

    def create_database(self, name):
        self._query(f'CREATE DATABASE {_mysql_identifier(name)};')

    def user_exists(self, user, host_pattern):
        rows = self._query(
            'SELECT User FROM mysql.user '
            f'WHERE User = {_mysql_literal(user)} AND Host = {_mysql_literal(host_pattern)};')
        return bool(rows)

    def grant_exists(self, user, host_pattern, database):
        grantee = _mysql_literal(f"{_mysql_literal(user)}@{_mysql_literal(host_pattern)}")
        if database == '*':
            # Every user has a global USAGE row, which means "no privileges".
            rows = self._query(
                'SELECT PRIVILEGE_TYPE FROM information_schema.USER_PRIVILEGES '
                f"WHERE GRANTEE = {grantee} AND PRIVILEGE_TYPE <> 'USAGE';")
        else:
            rows = self._query(
                'SELECT PRIVILEGE_TYPE FROM information_schema.SCHEMA_PRIVILEGES '
                f'WHERE GRANTEE = {grantee} AND TABLE_SCHEMA = {_mysql_literal(database)};')
        return bool(rows)

    def create_user(self, user, host_pattern, password):
        self._query(
            f'CREATE USER {_mysql_literal(user)}@{_mysql_literal(host_pattern)} '
            f'IDENTIFIED BY {_mysql_literal(password)};')

    def grant(self, user, host_pattern, privileges, database):
        scope = '*.*' if database == '*' else f'{_mysql_identifier(database)}.*'
        self._query(
            f'GRANT {check_privileges(privileges)} ON {scope} '
            f'TO {_mysql_literal(user)}@{_mysql_literal(host_pattern)};')


class PostgresServer(DatabaseServer):
    """Connect with psycopg2; host patterns have no meaning here.

    Without a password, libpq looks into ~/.pgpass.
    """

    def __init__(self, spec: ServerSpec, connect=psycopg2.connect):
        self._spec = spec
        self._connect = connect
        self._connection = None
        self._connection_lock = threading.Lock()

    def __repr__(self):
        return f'<PostgresServer {self._spec.login_host or "local"}>'

    def _cursor(self):
        with self._connection_lock:
            if self._connection is None:
                self._connection = self._open_connection()
        return self._connection.cursor()

    def _open_connection(self):
        _logger.info(
            "Connect to Postgres: %s:%s as %s",
            self._spec.login_host, self._spec.port or 5432, self._spec.login_user)
        kwargs = {'dbname': 'postgres'}
        if self._spec.login_host is not None:
            kwargs['host'] = self._spec.login_host
        if self._spec.port is not None:
            kwargs['port'] = self._spec.port
        if self._spec.login_user is not None:
            kwargs['user'] = self._spec.login_user
        if self._spec.login_password is not None:
            kwargs['password'] = self._spec.login_password
        try:
            connection = self._connect(**kwargs)
        except psycopg2.Error as e:
            raise DatabaseServerError(f"{self!r}: {e}")
        # CREATE DATABASE cannot run inside a transaction block.
        connection.autocommit = True
        return connection

    def _select(self, query, params):
        try:
            with self._cursor() as cursor:
                cursor.execute(query, params)
                return cursor.fetchall()
        except psycopg2.Error as e:
            raise DatabaseServerError(f"{self!r}: {e}")

    def _execute(self, statement, params=None):
        try:
            with self._cursor() as cursor:
                cursor.execute(statement, params)
        except psycopg2.Error as e:
            raise DatabaseServerError(f"{self!r}: {e}")

    def database_exists(self, name):
        return bool(self._select('SELECT 1 FROM pg_database WHERE datname = %s', [name]))

    def create_database(self, name):
        self._execute(sql.SQL('CREATE DATABASE {}').format(sql.Identifier(name)))

    def user_exists(self, user, host_pattern):
        return bool(self._select('SELECT 1 FROM pg_roles WHERE rolname = %s', [user]))

    def grant_exists(self, user, host_pattern, database):
        if database == '*':
            raise DatabaseServerError("PostgreSQL grants need a database name, not '*'")
        rows = self._select(
            'SELECT 1 FROM pg_database d, aclexplode(d.datacl) a, pg_roles r '
            'WHERE r.oid = a.grantee AND d.datname = %s AND r.rolname = %s',
            [database, user])
        return bool(rows)

    def create_user(self, user, host_pattern, password):
        self._execute(
            sql.SQL('CREATE ROLE {} LOGIN PASSWORD %s').format(sql.Identifier(user)),
            [password])

    def grant(self, user, host_pattern, privileges, database):
        if database == '*':
            raise DatabaseServerError("PostgreSQL grants need a database name, not '*'")
        self._execute(sql.SQL('GRANT {} ON DATABASE {} TO {}').format(
            sql.SQL(check_privileges(privileges)),
            sql.Identifier(database),
            sql.Identifier(user),
            ))

    def close(self):
        if self._connection is not None:
            self._connection.close()
            self._connection = None


class DatabaseServers:
    """One server object per spec for the duration of a run."""

    def __init__(self, host: Host, connect_postgres: Callable = psycopg2.connect):
        self._host = host
        self._connect_postgres = connect_postgres
        self._servers: Dict[ServerSpec, DatabaseServer] = {}
        self._lock = threading.Lock()

    def __call__(self, spec: ServerSpec) -> DatabaseServer:
        with self._lock:
            if spec not in self._servers:
                if spec.engine == 'mysql':
                    self._servers[spec] = MysqlServer(self._host, spec)
                elif spec.engine == 'postgres':
                    self._servers[spec] = PostgresServer(spec, self._connect_postgres)
                else:
                    raise ValueError(f"Unknown database engine {spec.engine!r}")
            return self._servers[spec]

    def close(self):
        with self._lock:
            for server in self._servers.values():
                server.close()
            self._servers.clear()
