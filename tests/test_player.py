"""
Unit tests for the media player title query.
"""

import sys
from types import SimpleNamespace

import psutil
import pytest

import player
from player import build_title_query, is_process_running, parse_tasklist_title


def test_parse_tasklist_title():
    output = (
        '"vlc.exe","4242","Console","1","120,000 K","Running","PC\\user","0:01:02",'
        '"Invader Zim S01E01.mkv - VLC media player"\r\n'
    )
    assert parse_tasklist_title(output) == "Invader Zim S01E01.mkv - VLC media player"


def test_parse_tasklist_title_without_window():
    output = '"vlc.exe","4242","Console","1","120,000 K","Running","PC\\user","0:00:00","N/A"\r\n'
    assert parse_tasklist_title(output) is None
    assert parse_tasklist_title("INFO: No tasks are running which match the specified criteria.") is None


def test_is_process_running(monkeypatch):
    processes = [
        SimpleNamespace(info={"name": "explorer.exe"}),
        SimpleNamespace(info={"name": "VLC.exe"}),
    ]
    monkeypatch.setattr(psutil, "process_iter", lambda attrs=None: iter(processes))
    assert is_process_running("vlc.exe")
    assert not is_process_running("mpc-hc.exe")


def test_build_title_query_only_on_windows(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    assert build_title_query() is None
    monkeypatch.setattr(sys, "platform", "win32")
    assert isinstance(build_title_query("vlc.exe"), player.TasklistTitleQuery)


def test_title_query_requires_current_title():
    class Incomplete(player.MediaPlayerTitleQuery):
        pass

    with pytest.raises(TypeError):
        Incomplete()
