#!/usr/bin/env python3
# The MIT License (MIT)
# Copyright © 2025 Entrius

"""
Pytest configuration for utils tests.
"""

import io
import tarfile
from unittest.mock import Mock

import pytest


@pytest.fixture
def make_response():
    """Build a requests.Response stand-in with a status code, JSON body and headers."""

    def make(status_code=200, json_data=None, text='', headers=None, content=b''):
        response = Mock(status_code=status_code, text=text, content=content)
        response.headers = headers or {}
        response.json.return_value = json_data if json_data is not None else {}
        return response

    return make


@pytest.fixture
def archive_bytes():
    """Gzipped tarball whose files sit under a single top-level directory, like GitHub archives."""

    def build(files, top='repo-0123abc'):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w:gz') as archive:
            for path, content in files.items():
                data = content.encode()
                info = tarfile.TarInfo(f'{top}/{path}')
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    return build
