"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import List, TYPE_CHECKING
from ..errors import StackSpecError

if TYPE_CHECKING:
    from ..MODELS.stack_spec import StackSpec

class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve_order(self, stack: "StackSpec") -> List[str]:
        """
        Determines the order to start services using a depth-first topological sort.
        Ties are broken by declaration order, so a declaration that already
        respects dependencies comes back unchanged.

        :param stack: The stack declaration.
        :return: Service names in the order they should be started.
        :raises StackSpecError: If a circular dependency is detected.
        """
        services = stack.services
        ordered: List[str] = []
        visited = set()
        processing: List[str] = []

        def visit(name):
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise StackSpecError(f"Circular dependency detected: {' -> '.join(cycle)}")
            if name in visited:
                return
            processing.append(name)
            for dep in services[name].depends_on:
                if dep in services:
                    visit(dep)
            processing.pop()
            visited.add(name)
            ordered.append(name)

        for name in services:
            visit(name)

        return ordered

    def shutdown_order(self, stack: "StackSpec") -> List[str]:
        """
        Dependents before their dependencies.
        """
        return list(reversed(self.resolve_order(stack)))

    def dependents_of(self, stack: "StackSpec", name: str) -> List[str]:
        """
        Every service that depends on ``name``, directly or transitively, in start order.
        """
        affected = {name}
        result = []
        for svc in self.resolve_order(stack):
            if svc != name and any(dep in affected for dep in stack.services[svc].depends_on):
                affected.add(svc)
                result.append(svc)
        return result
