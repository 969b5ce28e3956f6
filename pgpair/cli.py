#!/usr/bin/env python3
"""
pgpair: provision and smoke-test a bidirectional PostgreSQL logical
replication pair.
Main entry point for the install, test and status commands.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from .exceptions import PgPairError
from .instance import build_pair, redact_dsn
from .postgres_setup import PostgresSetup
from .replication_tester import ReplicationTester, default_ssh_factory
from .result import StepResult
from .utils.config import Config
from .utils.logger import setup_logger
from .utils.shell import LocalShell
from .utils.ssh_client import SSHClient


class PairCLI:
    """Main CLI interface for pgpair."""

    def __init__(self, input_func=input):
        """Initialize CLI."""
        self.logger = None
        self.config = None
        self.shell = None
        self._input = input_func

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='pgpair',
            description='Provision and test bidirectional PostgreSQL logical replication',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Provision both instances on this host (as root)
  %(prog)s install 192.168.90.6 192.168.90.7 192.168.90.0/24 mypassword

  # Provision a remote host over SSH
  %(prog)s install -y --ssh-host 192.168.90.6 --ssh-user deploy --ssh-key ~/.ssh/id_ed25519

  # Set up and verify replication between the two instances
  %(prog)s test 192.168.90.6 192.168.90.7 --ssh-user deploy

  # Show wal_level and subscription state
  %(prog)s status
            """
        )

        # Global options
        parser.add_argument(
            '--config',
            type=Path,
            help='Configuration file path (YAML or JSON)'
        )
        parser.add_argument(
            '--env-file',
            type=Path,
            help='.env file with PGPAIR_* overrides'
        )
        parser.add_argument(
            '--verbose', '-v',
            action='store_true',
            help='Enable verbose output'
        )
        parser.add_argument(
            '--log-file',
            type=Path,
            help='Also write log output to this file'
        )

        # SSH options, accepted after the install and test subcommands
        ssh_parent = argparse.ArgumentParser(add_help=False)
        ssh_group = ssh_parent.add_argument_group('SSH Options')
        ssh_group.add_argument(
            '--ssh-user',
            help='SSH username (default: root)'
        )
        ssh_group.add_argument(
            '--ssh-password',
            help='SSH password'
        )
        ssh_group.add_argument(
            '--ssh-key',
            type=Path,
            help='SSH private key file path'
        )

        subparsers = parser.add_subparsers(dest='command', help='Command to execute')

        install_parser = subparsers.add_parser(
            'install',
            parents=[ssh_parent],
            help='Install PostgreSQL and provision the main and second instances'
        )
        self._add_site_arguments(install_parser)
        install_parser.add_argument(
            'subnet',
            nargs='?',
            help='Subnet for trusted connections (default: 192.168.90.0/24)'
        )
        install_parser.add_argument(
            'postgres_password',
            nargs='?',
            help='PostgreSQL password (default: postgres, which leaves it unset)'
        )
        install_parser.add_argument(
            '--yes', '-y',
            action='store_true',
            help='Do not ask for confirmation'
        )
        install_parser.add_argument(
            '--ssh-host',
            help='Provision this remote host over SSH instead of the local host'
        )

        test_parser = subparsers.add_parser(
            'test',
            parents=[ssh_parent],
            help='Set up and verify bidirectional replication'
        )
        self._add_site_arguments(test_parser)

        status_parser = subparsers.add_parser(
            'status',
            help='Show reachability, wal_level and subscriptions'
        )
        self._add_site_arguments(status_parser)

        return parser

    @staticmethod
    def _add_site_arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            'site1_ip1',
            nargs='?',
            help='First IP address for Site 1 (default: 192.168.90.6)'
        )
        parser.add_argument(
            'site1_ip2',
            nargs='?',
            help='Second IP address for Site 1 (default: 192.168.90.7)'
        )

    def load_config(self, args: argparse.Namespace) -> None:
        """Load configuration from file and merge with command line arguments."""
        self.config = Config(args.config, env_file=args.env_file)

        if args.site1_ip1:
            self.config.set('network.site1_ip1', args.site1_ip1)
        if args.site1_ip2:
            self.config.set('network.site1_ip2', args.site1_ip2)
        if getattr(args, 'subnet', None):
            self.config.set('network.subnet', args.subnet)
        if getattr(args, 'ssh_user', None):
            self.config.set('ssh.user', args.ssh_user)
        if getattr(args, 'ssh_key', None):
            self.config.set('ssh.key_file', str(args.ssh_key))

    def setup_logging(self, args: argparse.Namespace) -> None:
        """Set up logging."""
        log_file = args.log_file or self.config.get('log_file')
        self.logger = setup_logger(
            'pgpair',
            log_file=Path(log_file) if log_file else None,
            verbose=args.verbose
        )

    def instances(self):
        return build_pair(
            self.config.get('network.site1_ip1'),
            self.config.get('network.site1_ip2'),
            pg_version=str(self.config.get('postgres.version')),
            main_port=int(self.config.get('network.main_port')),
            second_port=int(self.config.get('network.second_port')),
        )

    def _ssh_key(self) -> Optional[Path]:
        key_file = self.config.get('ssh.key_file')
        return Path(key_file).expanduser() if key_file else None

    def show_config(self, password: str, assume_yes: bool) -> None:
        """Print the install configuration and ask for confirmation."""
        self.logger.info("Configuration:")
        print(f"Site 1 - IP1: {self.config.get('network.site1_ip1')}")
        print(f"Site 1 - IP2: {self.config.get('network.site1_ip2')}")
        print(f"Trusted Subnet: {self.config.get('network.subnet')}")
        if password != self.config.get('postgres.default_password'):
            print("PostgreSQL Password will be set to: " + "*" * len(password))
        else:
            print("PostgreSQL Password: left unset")
        print("")
        if not assume_yes:
            self._input("Press Enter to continue or Ctrl+C to cancel...")

    def install(self, args: argparse.Namespace) -> List[StepResult]:
        """Provision PostgreSQL on the local host (or --ssh-host)."""
        password = (
            args.postgres_password
            or self.config.db_password()
            or self.config.get('postgres.default_password')
        )
        self.show_config(password, args.yes)

        if args.ssh_host:
            self.shell = SSHClient(
                hostname=args.ssh_host,
                username=self.config.get('ssh.user'),
                password=args.ssh_password,
                key_file=self._ssh_key(),
                port=int(self.config.get('ssh.port'))
            )
            self.shell.connect()
        else:
            self.shell = LocalShell()

        setup = PostgresSetup(
            self.shell,
            self.instances(),
            subnet=self.config.get('network.subnet'),
            password=password,
            default_password=self.config.get('postgres.default_password'),
            pg_version=str(self.config.get('postgres.version')),
            settings=self.config.get('postgres.settings'),
            start_timeout=self.config.get('timeouts.start'),
            poll_interval=self.config.get('timeouts.poll_interval'),
            logger=self.logger
        )
        return setup.provision()

    def build_tester(self, args: argparse.Namespace) -> ReplicationTester:
        main, second = self.instances()
        return ReplicationTester(
            main,
            second,
            db_name=self.config.get('postgres.database'),
            db_user=self.config.get('postgres.user'),
            password=self.config.db_password(),
            passfile=self.config.get('replication.passfile'),
            ssh_factory=default_ssh_factory(
                username=self.config.get('ssh.user'),
                password=getattr(args, 'ssh_password', None),
                key_file=self._ssh_key(),
                port=int(self.config.get('ssh.port'))
            ),
            restart_timeout=self.config.get('timeouts.restart'),
            sync_timeout=self.config.get('timeouts.sync'),
            poll_interval=self.config.get('timeouts.poll_interval'),
            logger=self.logger
        )

    def test(self, args: argparse.Namespace) -> List[StepResult]:
        return self.build_tester(args).run()

    def show_status(self, args: argparse.Namespace) -> None:
        """Show instance status."""
        tester = self.build_tester(args)
        for address, info in tester.status().items():
            if not info['reachable']:
                print(f"  {info['role']} ({address}): unreachable")
                continue
            print(f"  {info['role']} ({address}): wal_level={info['wal_level']}")
            for sub in info['subscriptions']:
                state = 'streaming' if sub['streaming'] else 'idle'
                enabled = 'enabled' if sub['enabled'] else 'disabled'
                print(f"    subscription {sub['name']}: {enabled}, {state}")
            if not info['subscriptions']:
                print("    no subscriptions")

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Main entry point."""
        parser = self.build_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return 1

        try:
            self.load_config(args)
            self.setup_logging(args)

            if args.command == 'install':
                self.install(args)
            elif args.command == 'test':
                self.test(args)
            elif args.command == 'status':
                self.show_status(args)
            return 0
        except KeyboardInterrupt:
            if self.logger:
                self.logger.info("Interrupted by user")
            return 130
        except PgPairError as e:
            self.logger.error(redact_dsn(str(e)), exc_info=args.verbose)
            return 1
        except Exception as e:
            if self.logger:
                self.logger.error(f"Error: {e}", exc_info=args.verbose)
            else:
                print(f"Error: {e}", file=sys.stderr)
            return 1
        finally:
            if self.shell:
                self.shell.disconnect()


def main():
    """Entry point for command line execution."""
    cli = PairCLI()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
