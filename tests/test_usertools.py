import os
import pwd
from unittest import mock

import pytest

from bpm.specbuilder import User
from bpm.usertools import VCAP_USER, UserFinder


def _entry(name, uid, gid):
    return pwd.struct_passwd((name, "x", uid, gid, "", "/home/" + name, "/bin/sh"))


def test_lookup_returns_spec_user():
    with mock.patch.object(pwd, "getpwnam", return_value=_entry("vcap", 2000, 3000)):
        user = UserFinder().lookup(VCAP_USER)
    assert user == User(uid=2000, gid=3000, username="vcap")


def test_lookup_failure_raises():
    with pytest.raises(KeyError):
        UserFinder().lookup("")


def test_lookup_of_current_user():
    entry = pwd.getpwuid(os.getuid())
    user = UserFinder().lookup(entry.pw_name)
    assert user.uid == os.getuid()
    assert user.gid == entry.pw_gid
    assert user.username == entry.pw_name


def test_negative_uid_rejected():
    with mock.patch.object(pwd, "getpwnam", return_value=_entry("vcap", -1, 3000)):
        with pytest.raises(ValueError, match="UID"):
            UserFinder().lookup("vcap")


def test_negative_gid_rejected():
    with mock.patch.object(pwd, "getpwnam", return_value=_entry("vcap", 2000, -1)):
        with pytest.raises(ValueError, match="GID"):
            UserFinder().lookup("vcap")