"""Backend and cloud block synthesis for the engine working directory."""

import json
from typing import Optional

from api.types import CloudSpec, ManagedResource


def hcl_quote(value) -> str:
    """Quote a string as an HCL/Go double-quoted literal."""
    return json.dumps(str(value), ensure_ascii=False)


def labels_as_hcl(labels: dict, indent: int) -> str:
    """Render labels as `"k" = "v"` lines, trimmed of outer whitespace."""
    lines = ''
    for key in sorted(labels):
        lines += ' ' * indent + f'{hcl_quote(key)} = {hcl_quote(labels[key])}\n'
    return lines.strip()


def cloud_to_hcl(cloud: CloudSpec) -> str:
    out = 'terraform {\n'
    out += '  cloud {\n'
    out += f'    organization = {hcl_quote(cloud.organization)}\n'
    out += '    workspaces {\n'
    workspaces = cloud.workspaces
    if workspaces is not None and workspaces.name:
        out += f'      name = {hcl_quote(workspaces.name)}\n'
    if workspaces is not None and workspaces.tags:
        out += '      tags = [' + ', '.join(hcl_quote(t) for t in workspaces.tags) + ']\n'
    out += '    }\n'
    out += f'    hostname = {hcl_quote(cloud.hostname)}\n'
    out += f'    token = {hcl_quote(cloud.token)}\n'
    out += '  }\n'
    out += '}\n'
    return out


def backend_completely_disabled(resource: ManagedResource) -> bool:
    """Cloud mode and an explicitly disabled backend both skip the backend block."""
    if resource.spec.cloud is not None:
        return True
    backend = resource.spec.backend_config
    return backend is not None and backend.disable


def backend_config_hcl(resource: ManagedResource, disable_k8s_backend: bool = False) -> str:
    """Build the backend block by priority.

    1. customConfiguration, verbatim inside a terraform block
    2. backendConfig present: kubernetes backend with its parameters
    3. outside a cluster (disable_k8s_backend): local backend
    4. otherwise: in-cluster kubernetes backend named after the resource
    """
    backend = resource.spec.backend_config
    labels = labels_as_hcl(resource.metadata.labels, 6)

    if backend is not None and backend.custom_configuration:
        return f'\nterraform {{\n  {backend.custom_configuration}\n}}\n'

    if backend is not None:
        return (
            '\nterraform {\n'
            '  backend "kubernetes" {\n'
            f'    secret_suffix     = {hcl_quote(backend.secret_suffix)}\n'
            f'    in_cluster_config = {"true" if backend.in_cluster_config else "false"}\n'
            f'    config_path       = {hcl_quote(backend.config_path)}\n'
            f'    namespace         = {hcl_quote(resource.namespace)}\n'
            '    labels            = {\n'
            f'      {labels}\n'
            '    }\n'
            '  }\n'
            '}\n'
        )

    if disable_k8s_backend:
        return '\nterraform {\n  backend "local" { }\n}'

    return (
        '\nterraform {\n'
        '  backend "kubernetes" {\n'
        f'    secret_suffix     = {hcl_quote(resource.name)}\n'
        '    in_cluster_config = true\n'
        f'    namespace         = {hcl_quote(resource.namespace)}\n'
        '    labels            = {\n'
        f'      {labels}\n'
        '    }\n'
        '  }\n'
        '}\n'
    )


def backend_file_content(resource: ManagedResource, disable_k8s_backend: bool = False) -> Optional[str]:
    """Content to write into the working directory, or None to write nothing."""
    if backend_completely_disabled(resource):
        if resource.spec.cloud is not None:
            return cloud_to_hcl(resource.spec.cloud)
        return None
    return backend_config_hcl(resource, disable_k8s_backend)
