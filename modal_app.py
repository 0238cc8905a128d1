"""Modal deployment entrypoint for the toolbox control plane.

Deploy with: ``modal deploy modal_app.py``
Run locally: ``modal serve modal_app.py``
"""

from __future__ import annotations

import modal

# --- Modal App Configuration ---

app = modal.App(
    name="toolbox-control",
    secrets=[
        modal.Secret.from_name("supabase-creds", required_keys=[
            "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY",
        ]),
        modal.Secret.from_name("digitalocean-token", required_keys=["DIGITALOCEAN_TOKEN"]),
        modal.Secret.from_name("toolbox-agent", required_keys=[
            "AGENT_API_KEY", "AGENT_DOCKER_IMAGE_URL", "TOOLBOX_CALLBACK_BASE_URL",
        ]),
        # Optional HS256 fallback; RS256 JWKS mode only needs SUPABASE_URL.
        modal.Secret.from_name("jwt-secret"),
    ],
)

# --- Container Image ---

image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.100.0",
        "uvicorn[standard]>=0.23.0",
        "httpx>=0.24.0",
        "pydantic>=2.0",
        "PyJWT[crypto]>=2.8.0",
        "structlog>=24.1.0",
        "prometheus-client>=0.20.0",
    )
    .env({"PYTHONPATH": "/app/src", "ENVIRONMENT": "production"})
    # Keep local code mount last (Modal requirement) to avoid rebuild loops.
    .add_local_dir("src/toolbox_control", "/app/src/toolbox_control")
)


# --- FastAPI ASGI App ---


@app.function(
    image=image,
    cpu=1.0,
    memory=512,
    # Provisioning polls the provider for up to five minutes.
    timeout=600,
    min_containers=1,
    max_containers=1,
)
@modal.concurrent(max_inputs=100)
@modal.asgi_app()
def toolbox_control_web_app():
    """Modal ASGI entry point for the toolbox control-plane API."""
    from toolbox_control import ToolboxControlSettings, create_app

    return create_app(ToolboxControlSettings.from_env())


# --- CLI Commands ---

@app.local_entrypoint()
def main():
    """Local entrypoint for testing and development."""
    print("Toolbox Control - Modal Deployment")
    print("=" * 50)
    print()
    print("Commands:")
    print("  modal deploy modal_app.py      - Deploy control-plane endpoint")
    print("  modal serve modal_app.py       - Run locally with hot reload")
    print()
    print("ASGI Endpoints:")
    print("  - toolbox_control_web_app: toolbox and tool-instance APIs")
    print()
