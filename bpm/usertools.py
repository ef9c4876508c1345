"""Lookup of host users for running jobs."""

from __future__ import annotations

import pwd

from bpm.specbuilder import User

VCAP_USER = "vcap"


class UserFinder:
    """Resolves user names to container user identities."""

    def lookup(self, username: str) -> User:
        """Return the identity of ``username``; raise KeyError if unknown."""
        entry = pwd.getpwnam(username)
        if entry.pw_uid < 0:
            raise ValueError("UID can't be negative")
        if entry.pw_gid < 0:
            raise ValueError("GID can't be negative")
        return User(uid=entry.pw_uid, gid=entry.pw_gid, username=entry.pw_name)