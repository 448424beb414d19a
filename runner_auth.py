#!/usr/bin/env python3
"""
Credential acquisition for the runner lifecycle.

AUTHENTICATION CHAIN:
=====================
  The upstream session used to mint registration/removal tokens is resolved
  in this order:
  1. GITHUB_PAT / GITHUB_TOKEN   - Personal Access Token (shape-checked)
  2. GitHub App                  - GITHUB_CLIENT_ID + GITHUB_APP_KEY_PATH
                                   (JWT -> Installation Token)
  3. gh CLI                      - token of an existing 'gh auth login' session

  Registration and removal tokens are single use and are minted by one POST
  per call. They are never cached or persisted.
"""

import argparse
import os
import re
import shutil
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import jwt

from runner_config import (AuthError, Config, InvalidFormat, RunnerError, UpstreamError,
                           logger, setup_logging)
from runner_exec import CommandRunner
from runner_github import GitHubClient

HEX40_PATTERN = re.compile(r'^[0-9a-fA-F]{40}$')
PREFIXED_PATTERN = re.compile(r'^(ghp_|github_pat_)[A-Za-z0-9_]{20,}$')


class CredentialKind(str, Enum):
    PERSONAL_ACCESS_TOKEN = "personal_access_token"
    REGISTRATION_TOKEN = "registration_token"
    REMOVAL_TOKEN = "removal_token"


@dataclass(frozen=True)
class Credential:
    """Opaque bearer token. repr() never exposes the value."""
    kind: CredentialKind
    token: str = field(repr=False)
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

    def expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def __str__(self):
        return f"Credential(kind={self.kind.value}, token=***)"


def validate_token_shape(token: Optional[str]) -> str:
    """
    Cheap local guard against obviously wrong input: a classic 40 character
    hex token or a prefixed long-lived token.
    """
    if not token:
        raise InvalidFormat("Token is empty.")
    if HEX40_PATTERN.match(token) or PREFIXED_PATTERN.match(token):
        return token
    raise InvalidFormat(
        "Token does not look like a GitHub personal access token "
        "(expected 40 hex characters, 'ghp_...' or 'github_pat_...')."
    )


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parses GitHub's ISO 8601 timestamps ('2024-01-01T10:00:00.000+00:00' or 'Z')."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Unparsable expiry timestamp '{value}', treating as unknown")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GitHubAppAuthenticator:
    """
    Handles RSA signing for GitHub App Authentication.
    Handles missing keys gracefully; is_available reports readiness.
    """
    def __init__(self, config: Config):
        self.client_id = config.client_id
        self.key_path = config.app_key_path

        self._key_cache: Optional[bytes] = None
        self._is_ready = False

        if self.client_id and self.key_path:
            try:
                self._load_key()
                self._is_ready = True
            except (OSError, RunnerError) as e:
                logger.error(f"GitHub App Auth initialization failed: {e}")

    @property
    def is_available(self) -> bool:
        return self._is_ready and self._key_cache is not None

    def _load_key(self):
        path_obj = Path(self.key_path)
        if not path_obj.exists():
            raise FileNotFoundError(f"Private Key file not found at: {self.key_path}")

        try:
            with path_obj.open('rb') as f:
                self._key_cache = f.read()
        except OSError as e:
            raise AuthError(f"Could not read key file (permission denied?): {e}")

    def generate_jwt(self) -> str:
        """Sign a JWT using Client ID as Issuer."""
        if not self.is_available:
            raise AuthError("Cannot generate JWT: App Auth is not ready (check logs for init errors).")

        now = int(time.time())
        payload = {
            'iat': now - 60,
            'exp': now + 600,
            'iss': self.client_id
        }

        try:
            encoded_jwt = jwt.encode(payload, self._key_cache, algorithm='RS256')
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise AuthError(f"JWT Signing failed: {e}")
        if isinstance(encoded_jwt, bytes):
            return encoded_jwt.decode('utf-8')
        return encoded_jwt


class CredentialProvider:
    """
    Obtains and validates GitHub credentials. Stateless: every call goes
    back to its source.
    """

    TOKEN_ACTIONS = {
        CredentialKind.REGISTRATION_TOKEN: "registration",
        CredentialKind.REMOVAL_TOKEN: "remove",
    }

    def __init__(self, config: Config, github: GitHubClient, commands: Optional[CommandRunner] = None):
        self.config = config
        self.github = github
        self.commands = commands or CommandRunner()
        self.app_auth = GitHubAppAuthenticator(config)

    def obtain(self, kind: CredentialKind) -> Credential:
        if kind == CredentialKind.PERSONAL_ACCESS_TOKEN:
            return self._personal_access_token()
        if kind in self.TOKEN_ACTIONS:
            return self._runner_token(kind)
        raise AuthError(f"Unsupported credential kind: {kind}")

    def _personal_access_token(self) -> Credential:
        if not self.config.github_pat:
            raise AuthError("No personal access token configured (GITHUB_PAT or GITHUB_TOKEN).")
        token = validate_token_shape(self.config.github_pat)
        return Credential(CredentialKind.PERSONAL_ACCESS_TOKEN, token)

    # https://docs.github.com/en/apps/creating-github-apps/authenticating-with-a-github-app/authenticating-as-a-github-app-installation
    def _get_app_installation_token(self) -> str:
        logger.info("Authenticating via GitHub App (Client ID)...")

        jwt_token = self.app_auth.generate_jwt()

        url = self.github.repo_endpoint(self.config.repository, "installation")
        installation_data = self.github.execute_api_call(url, auth_token=jwt_token)

        try:
            installation_id = installation_data['id']
        except (KeyError, TypeError):
            raise UpstreamError("Invalid API response: installation id missing")
        logger.info(f"Installation ID found: {installation_id}")

        access_tokens_url = self.github.endpoint(f"app/installations/{installation_id}/access_tokens")
        data = self.github.execute_api_call(access_tokens_url, method="POST", auth_token=jwt_token)
        try:
            return data['token']
        except (KeyError, TypeError):
            raise UpstreamError("Invalid API response: installation token missing")

    def _gh_cli_token(self) -> Optional[str]:
        if not self.config.use_gh_cli or shutil.which("gh") is None:
            return None
        code, output = self.commands.capture(["gh", "auth", "token"])
        token = output.strip()
        if code != 0 or not token:
            logger.debug("gh CLI present but not authenticated")
            return None
        return token

    def session_token(self) -> str:
        """Bearer token of an authenticated upstream session. Raises AuthError if none."""
        if self.config.github_pat:
            return self._personal_access_token().token
        if self.app_auth.is_available:
            return self._get_app_installation_token()
        token = self._gh_cli_token()
        if token:
            logger.info("Using the authenticated gh CLI session.")
            return token
        raise AuthError(
            "Authentication not configured: provide GITHUB_PAT, "
            "GITHUB_CLIENT_ID + GITHUB_APP_KEY_PATH, or run 'gh auth login'."
        )

    def has_session(self) -> bool:
        try:
            self.session_token()
        except AuthError:
            return False
        return True

    def _runner_token(self, kind: CredentialKind) -> Credential:
        action = self.TOKEN_ACTIONS[kind]
        auth_token = self.session_token()

        logger.info(f"Requesting {action} token via API...")
        url = self.github.repo_endpoint(self.config.repository, f"actions/runners/{action}-token")
        data = self.github.execute_api_call(url, method="POST", auth_token=auth_token)

        try:
            token = data["token"]
        except (KeyError, TypeError):
            raise UpstreamError(f"Invalid API response: {action} token missing")

        credential = Credential(kind, token, expires_at=parse_timestamp(data.get("expires_at")))
        logger.info(f"Obtained {action} token (expires {credential.expires_at or 'unknown'})")
        return credential


def main(argv: Optional[list] = None):
    """Token helper entry point."""
    parser = argparse.ArgumentParser(description="GitHub credential helper for the runner controller")
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Check the shape of a personal access token")
    validate.add_argument('token', nargs='?', help='Token (default: GITHUB_PAT or GITHUB_TOKEN)')

    app_jwt = subparsers.add_parser("jwt", help="Generate a GitHub App JWT")
    app_jwt.add_argument('--pem', '-p', required=True, help='Path of private PEM file')
    app_jwt.add_argument(
        '--client-id', '-c',
        default=os.environ.get('GITHUB_CLIENT_ID'),
        help='GitHub Client ID (can also be set via GITHUB_CLIENT_ID env var)',
    )

    registration = subparsers.add_parser("registration", help="Mint one runner registration token")
    registration.add_argument('-c', '--config', default='.env', help='Configuration file (default: .env)')

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        if args.command == "validate":
            token = args.token or os.environ.get("GITHUB_PAT") or os.environ.get("GITHUB_TOKEN")
            validate_token_shape(token)
            logger.info("Token format looks valid.")
        elif args.command == "jwt":
            if not args.client_id:
                parser.error("Client ID is required. Please provide --client-id flag or set GITHUB_CLIENT_ID environment variable.")
            config = Config(client_id=args.client_id, app_key_path=args.pem)
            authenticator = GitHubAppAuthenticator(config)
            print(authenticator.generate_jwt())
        elif args.command == "registration":
            config = Config.load(args.config)
            config.validate()
            provider = CredentialProvider(config, GitHubClient(config))
            credential = provider.obtain(CredentialKind.REGISTRATION_TOKEN)
            print(credential.token)
    except RunnerError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
