# The MIT License (MIT)
# Copyright © 2025 Entrius
import logging
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from cbs.constants import GITLAB_MAX_ATTEMPTS, GITLAB_REQUEST_TIMEOUT
from cbs.utils.models import PipelineJob, PipelineVariables

logger = logging.getLogger(__name__)


def split_gitlab_url(gitlab_url: str) -> Tuple[str, str]:
    """Split a GitLab url into (scheme prefix, domain). A bare domain defaults to https."""
    if '://' in gitlab_url:
        scheme, domain = gitlab_url.split('://', 1)
        return f'{scheme}://', domain.rstrip('/')
    return 'https://', gitlab_url.rstrip('/')


def projects_api_url(gitlab_url: str) -> str:
    prefix, domain = split_gitlab_url(gitlab_url)
    return f'{prefix}{domain}/api/v4/projects'


def make_gitlab_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {'Accept': 'application/json'}
    if token:
        headers['PRIVATE-TOKEN'] = token
    return headers


def create_pipeline(
    gitlab_url: str, project_path: str, token: str, ref: str, variables: PipelineVariables
) -> Optional[Tuple[int, int]]:
    """
    Create a pipeline for ``ref`` of ``project_path``.

    Args:
        gitlab_url (str): GitLab instance url
        project_path (str): Project path, e.g. 'parity/mirrors/polkadot'
        token (str): Token with the `api` scope
        ref (str): Branch to run the pipeline for
        variables (PipelineVariables): Pipeline variables

    Returns:
        Optional[Tuple[int, int]]: (pipeline id, project id), or None if the pipeline could not be created
    """
    url = f'{projects_api_url(gitlab_url)}/{quote(project_path, safe="")}/pipeline'
    payload = {'ref': ref, 'variables': variables}
    logger.info(f'pipeline_creation_payload: {payload}')

    for attempt in range(GITLAB_MAX_ATTEMPTS):
        try:
            response = requests.post(
                url,
                headers={**make_gitlab_headers(token), 'Content-Type': 'application/json'},
                json=payload,
                timeout=GITLAB_REQUEST_TIMEOUT,
            )
            if response.status_code in (200, 201):
                data = response.json()
                pipeline_id = data.get('id')
                project_id = data.get('project_id')
                if pipeline_id is None or project_id is None:
                    logger.error(f'Failed to fetch pipeline id or project id from {url}: {data}')
                    return None
                return int(pipeline_id), int(project_id)

            logger.warning(
                f'Pipeline creation at {url} failed with status {response.status_code} '
                f'(attempt {attempt + 1}/{GITLAB_MAX_ATTEMPTS}): {response.text}'
            )
            if response.status_code < 500:
                return None
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f'Pipeline creation at {url} failed (attempt {attempt + 1}/{GITLAB_MAX_ATTEMPTS}): {e}')

        if attempt < GITLAB_MAX_ATTEMPTS - 1:
            time.sleep(2)

    return None


def pipeline_url(gitlab_url: str, project_id: int, pipeline_id: int) -> str:
    return f'{projects_api_url(gitlab_url)}/{project_id}/pipelines/{pipeline_id}'


def get_pipeline_status(url: str, token: str) -> Optional[str]:
    """Fetch the status of a pipeline. Single attempt: the poll loop owns the retry budget."""
    try:
        response = requests.get(url, headers=make_gitlab_headers(token), timeout=GITLAB_REQUEST_TIMEOUT)
        if response.status_code != 200:
            logger.warning(f'Request to {url} failed with status {response.status_code}')
            return None
        return response.json().get('status') or None
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.warning(f'Request to {url} failed: {e}')
        return None


def get_pipeline_jobs(jobs_url: str, token: Optional[str] = None) -> Optional[List[PipelineJob]]:
    """Fetch the job listing of a pipeline."""
    for attempt in range(GITLAB_MAX_ATTEMPTS):
        try:
            response = requests.get(jobs_url, headers=make_gitlab_headers(token), timeout=GITLAB_REQUEST_TIMEOUT)
            if response.status_code == 200:
                return response.json()
            logger.warning(
                f'Request to {jobs_url} failed with status {response.status_code} '
                f'(attempt {attempt + 1}/{GITLAB_MAX_ATTEMPTS})'
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f'Request to {jobs_url} failed (attempt {attempt + 1}/{GITLAB_MAX_ATTEMPTS}): {e}')

        if attempt < GITLAB_MAX_ATTEMPTS - 1:
            time.sleep(2)

    return None
