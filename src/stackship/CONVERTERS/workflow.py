"""
Generates a CI workflow that builds and pushes the stack's images, then deploys them.
"""
import logging
import os
from typing import Dict

from jinja2 import Template

from ..MODELS.stack_spec import StackSpec
from ..REGISTRY.image_reference import ImageReference
from ..errors import StackSpecError

logger = logging.getLogger(__name__)

WORKFLOW_TEMPLATE = """\
name: deploy-{{ project }}

on:
  push:
    branches: [{{ branch }}]
  workflow_dispatch:

concurrency:
  group: deploy-{{ project }}
  cancel-in-progress: false

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
{% for registry in registries %}
      - uses: docker/login-action@v3
        with:
          registry: {{ registry }}
          username: {{ secret('REGISTRY_USER') }}
          password: {{ secret('REGISTRY_PASSWORD') }}
{% endfor %}
{% for build in builds %}
      - name: Build and push {{ build.service }}
        uses: docker/build-push-action@v6
        with:
          context: {{ build.context }}
          push: true
          tags: {{ build.image }}
{% endfor %}

  deploy:
    needs: build
    runs-on: ubuntu-latest
    steps:
      - uses: actions/setup-python@v5
        with:
          python-version: "3.12"
      - run: pip install stackship
      - name: Install deploy key
        run: |
          mkdir -p ~/.ssh
          echo "{{ secret('DEPLOY_KEY') }}" > ~/.ssh/deploy_key
          chmod 600 ~/.ssh/deploy_key
      - name: Reconcile {{ project }}
        run: stackship deploy
        env:
          STACKSHIP_HOST: {{ secret('DEPLOY_HOST') }}
          STACKSHIP_USER: {{ secret('DEPLOY_USER') }}
          STACKSHIP_SSH_KEY: ~/.ssh/deploy_key
          STACKSHIP_STACK_DIR: {{ stack_dir }}
          STACKSHIP_STACK_FILE: {{ stack_file }}
"""


def _secret(name: str) -> str:
    return "${{ secrets.%s }}" % name


class WorkflowConverter:
    """
    Renders a GitHub Actions workflow for a stack.
    """

    def __init__(self, stack: StackSpec, builds: Dict[str, str], branch: str = "main",
                 stack_dir: str = "~/app", stack_file: str = "stack.yml"):
        """
        :param stack: The stack whose images are built.
        :param builds: Service name -> build context directory, for images built in CI.
        :param branch: Branch whose pushes trigger a deployment.
        :param stack_dir: Stack directory on the deployment host.
        :param stack_file: Stack file name inside ``stack_dir``.
        """
        unknown = [name for name in builds if name not in stack.services]
        if unknown:
            raise StackSpecError(f"build contexts given for undeclared services: {', '.join(unknown)}")
        self.stack = stack
        self.builds = builds
        self.branch = branch
        self.stack_dir = stack_dir
        self.stack_file = stack_file
        self.template = Template(WORKFLOW_TEMPLATE, trim_blocks=True, lstrip_blocks=True)

    def render(self) -> str:
        builds = []
        registries = []
        for name, context in self.builds.items():
            image = self.stack.services[name].image
            registry = ImageReference.parse(image).registry
            if registry != ImageReference.DEFAULT_REGISTRY and registry not in registries:
                registries.append(registry)
            builds.append({"service": name, "context": context, "image": image})
        return self.template.render(
            project=self.stack.project,
            branch=self.branch,
            registries=registries,
            builds=builds,
            stack_dir=self.stack_dir,
            stack_file=self.stack_file,
            secret=_secret,
        )

    def convert(self, output_path: str = ".github/workflows/deploy.yml") -> str:
        """
        Writes the workflow file.

        :return: The path written.
        """
        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(self.render())
        logger.info("Workflow written to %s", output_path)
        return output_path
