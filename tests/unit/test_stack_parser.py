import pytest
import yaml
from stackship.MODELS.service_definition import PortScope, RestartPolicyCondition
from stackship.MODELS.stack_spec import RetentionPolicy
from stackship.PARSERS.stack_parser import StackParser, dump_stack, fingerprint, parse_duration
from stackship.errors import StackSpecError

from conftest import STACK_YAML


def test_parse(tmp_path):
    stack_content = {
        'project': 'shop',
        'services': {
            'web': {
                'image': 'nginx:latest',
                'ports': ['80:80'],
                'environment': {
                    'DEBUG': True,
                    'WORKERS': 4,
                },
                'restart': 'always',
                'depends_on': {'db': {'condition': 'service_started'}},
            },
            'db': {
                'image': 'postgres:16',
                'volumes': ['db_data:/var/lib/postgresql/data'],
            }
        },
        'volumes': {
            'db_data': {}
        }
    }

    stack_file = tmp_path / "stack.yml"
    with open(stack_file, 'w') as f:
        yaml.dump(stack_content, f, sort_keys=False)

    stack = StackParser(context={}).parse(str(stack_file))

    assert stack.project == 'shop'
    assert list(stack.services) == ['web', 'db']
    web = stack.services['web']
    assert web.image == 'nginx:latest'
    assert web.ports[0].host_port == 80
    assert web.ports[0].container_port == 80
    assert web.ports[0].scope == PortScope.PUBLIC
    assert web.environment == {'DEBUG': 'true', 'WORKERS': '4'}
    assert web.restart_policy == RestartPolicyCondition.ALWAYS
    assert web.depends_on == ['db']

    db = stack.services['db']
    assert db.restart_policy == RestartPolicyCondition.NO
    assert db.volumes[0].source == 'db_data'
    assert db.volumes[0].target == '/var/lib/postgresql/data'
    assert stack.volumes['db_data'].mount_path == '/var/lib/postgresql/data'
    assert stack.volumes['db_data'].retention == RetentionPolicy.PERSISTENT


def test_project_defaults_to_directory_name(tmp_path):
    app_dir = tmp_path / "My-App"
    app_dir.mkdir()
    (app_dir / "stack.yml").write_text("services:\n  web:\n    image: nginx\n")
    assert StackParser(context={}).parse(str(app_dir / "stack.yml")).project == "my-app"


def test_port_forms():
    content = """
services:
  api:
    image: acme/api
    ports:
      - "127.0.0.1:8000:8000"
      - "9000"
      - "0.0.0.0:8443:443/tcp"
      - target: 9100
        published: 9100
        host_ip: 127.0.0.1
"""
    ports = StackParser(context={}).parse_from_string(content).services['api'].ports
    assert [(p.host_port, p.container_port, p.scope) for p in ports] == [
        (8000, 8000, PortScope.INTERNAL),
        (None, 9000, PortScope.PUBLIC),
        (8443, 443, PortScope.PUBLIC),
        (9100, 9100, PortScope.INTERNAL),
    ]
    assert ports[0].publish_arg() == "127.0.0.1:8000:8000"
    assert ports[1].publish_arg() is None


def test_restart_aliases():
    content = """
services:
  a: {image: x/a, restart: never}
  b: {image: x/b, restart: no}
  c: {image: x/c, restart: unless-stopped}
"""
    services = StackParser(context={}).parse_from_string(content).services
    assert services['a'].restart_policy == RestartPolicyCondition.NO
    assert services['b'].restart_policy == RestartPolicyCondition.NO
    assert services['c'].restart_policy == RestartPolicyCondition.UNLESS_STOPPED


def test_interpolation():
    content = """
services:
  db:
    image: postgres:${PG_VERSION:-16}
    environment:
      POSTGRES_PASSWORD: ${DB_PASSWORD}
      PRICE: $$5
"""
    stack = StackParser(context={'DB_PASSWORD': 's3cret'}).parse_from_string(content)
    db = stack.services['db']
    assert db.image == 'postgres:16'
    assert db.environment == {'POSTGRES_PASSWORD': 's3cret', 'PRICE': '$5'}


def test_missing_variable_is_an_error():
    with pytest.raises(StackSpecError, match="DB_PASSWORD"):
        StackParser(context={}).parse_from_string(
            "services:\n  db:\n    image: postgres\n    environment:\n      P: ${DB_PASSWORD}\n"
        )


def test_healthcheck():
    content = """
services:
  db:
    image: postgres
    healthcheck:
      test: ["CMD-SHELL", "pg_isready -U postgres"]
      interval: 5s
      timeout: 1m30s
      retries: 5
"""
    hc = StackParser(context={}).parse_from_string(content).services['db'].health_check
    assert hc.test == ['pg_isready -U postgres']
    assert hc.interval == 5.0
    assert hc.timeout == 90.0
    assert hc.retries == 5


@pytest.mark.parametrize("content,message", [
    ("services: {}\n", "no services"),
    ("services:\n  web: {ports: ['80']}\n", "no image"),
    ("services:\n  web: {image: 'nginx:'}\n", "web"),
    ("services:\n  web: {image: nginx, depends_on: [api]}\n", "undeclared service api"),
    ("services:\n  a: {image: x/a, depends_on: [b]}\n  b: {image: x/b, depends_on: [a]}\n", "Circular"),
    ("services:\n  db: {image: postgres, volumes: ['data:/var/lib']}\n", "undeclared volume"),
    ("services:\n  db: {image: postgres, volumes: ['/host/path']}\n", "cannot parse volume"),
    ("services:\n  db: {image: postgres}\nvolumes: [db_data]\n", "volumes must be a mapping"),
    ("services:\n  web: {image: nginx, ports: [{published: 80}]}\n", "has no target"),
    ("services:\n  db: {image: postgres, volumes: [{source: data}]}\nvolumes: {data: {}}\n",
     "needs a source and a target"),
    ("services:\n  db: {image: postgres, healthcheck: pg_isready}\n", "healthcheck must be a mapping"),
    ("services:\n  db: {image: postgres, environment: [1, 2]}\n", "invalid stack"),
    ("services:\n  db: {image: postgres}\nvolumes: {data: nope}\n", "invalid stack"),
    ("- just\n- a list\n", "mapping"),
    ("services: [\n", "invalid YAML"),
])
def test_invalid_stacks(content, message):
    with pytest.raises(StackSpecError, match=message):
        StackParser(context={}).parse_from_string(content)


def test_missing_file():
    with pytest.raises(StackSpecError):
        StackParser(context={}).parse("/nonexistent/stack.yml")


def test_canonical_form_is_stable(stack):
    text = dump_stack(stack)
    reparsed = StackParser(context={}).parse_from_string(text)
    assert reparsed == stack
    assert dump_stack(reparsed) == text
    assert fingerprint(reparsed) == fingerprint(stack)


def test_canonical_form_keeps_literal_dollars():
    stack = StackParser(context={}).parse_from_string(
        "services:\n  web:\n    image: nginx\n    environment:\n      PRICE: $$5\n"
    )
    reparsed = StackParser(context={}).parse_from_string(dump_stack(stack))
    assert reparsed.services['web'].environment['PRICE'] == '$5'


def test_fingerprint_changes_with_image(stack):
    changed = StackParser(context={}).parse_from_string(
        STACK_YAML.replace("postgres:16", "postgres:17")
    )
    assert fingerprint(changed) != fingerprint(stack)


def test_parse_duration():
    assert parse_duration(3) == 3.0
    assert parse_duration("1h") == 3600.0
    assert parse_duration("250ms") == 0.25
    with pytest.raises(ValueError):
        parse_duration("soon")
