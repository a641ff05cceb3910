"""
stampede -- a scenario-driven load-generation engine.

Given a declarative scenario document, the engine schedules concurrent
synthetic client iterations against a target system (fixed
concurrency, ramping concurrency, or ramping arrival rate), shares
bounded resource pools between them, aggregates counter/trend/rate
metrics and evaluates pass/fail thresholds.

Typical programmatic use::

    from stampede.engine import Engine
    from stampede.scenario import ScenarioRegistry

    plan = ScenarioRegistry().load("scenarios/event_api.yml")
    result = Engine(plan).run()
    print(result.passed)
"""

__version__ = "0.1.0"
