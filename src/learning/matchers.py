"""Rule-based pattern matchers.

Each matcher is a pure function ``(MemoryEvent) -> list[PatternCandidate]``.
``extract_candidates`` picks the typed matcher for the memory type and falls
back to the keyword catalogue only when the typed matcher found nothing.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

from .models import (
    ANTI_PATTERN_CATEGORY,
    DetectionMethod,
    MemoryEvent,
    MemoryType,
    PatternCandidate,
)

EXAMPLE_CHARS = 500
CONTEXT_CHARS = 100

EXPLICIT_CONFIDENCE = 0.9
TYPED_CONFIDENCE = 0.8
CODE_CONFIDENCE = 0.7
TECH_CONFIDENCE = 0.7
BUG_CONFIDENCE = 0.6
KEYWORD_CONFIDENCE = 0.5

Matcher = Callable[[MemoryEvent], list[PatternCandidate]]

_INFLECTIONS = r"(?:s|es|d|ed|ing|er|ers|ment|ments|ure|ures|ic)?"


@lru_cache(maxsize=512)
def _term_regex(term: str) -> re.Pattern:
    # "mock" hits "mocks" and "mocked" but not "mockup"
    return re.compile(r"(?<![a-z0-9])" + re.escape(term.lower()) + _INFLECTIONS + r"(?![a-z0-9])")


def contains(text: str, term: str) -> bool:
    return _term_regex(term).search(text) is not None


def slugify(text: str, max_words: int = 6) -> str:
    words = re.findall(r"[a-z0-9]+", text.lower())[:max_words]
    return "_".join(words)


def extract_context(content: str, keyword: str, size: int = CONTEXT_CHARS) -> str:
    """Text window around the first occurrence of keyword."""
    idx = content.lower().find(keyword.lower())
    if idx == -1:
        return ""
    return content[max(0, idx - size) : idx + len(keyword) + size]


# --- keyword catalogue ---


@dataclass(frozen=True)
class KeywordRule:
    """A catalogue entry. Matches when every term of any alternative is present."""

    signature: str
    category: str
    type: str
    name: str
    description: str
    alternatives: tuple[tuple[str, ...], ...]
    languages: tuple[str, ...] = ("any",)

    def first_hit(self, text: str) -> str | None:
        for terms in self.alternatives:
            if all(contains(text, t) for t in terms):
                return terms[0]
        return None


def _rule(signature, category, type_, name, description, *alternatives, languages=("any",)):
    alts = tuple((a,) if isinstance(a, str) else tuple(a) for a in alternatives)
    return KeywordRule(signature, category, type_, name, description, alts, languages)


KEYWORD_RULES: tuple[KeywordRule, ...] = (
    _rule("microservices_architecture", "architectural", "microservices",
          "Microservices Architecture", "Distributed architecture with independent services",
          "microservice", "micro-service"),
    _rule("mvc_pattern", "architectural", "mvc", "Model-View-Controller",
          "MVC architectural pattern", "mvc", ("model", "view", "controller")),
    _rule("singleton_pattern", "creational", "singleton", "Singleton Pattern",
          "Ensures only one instance of a class exists", "singleton", "single instance"),
    _rule("factory_pattern", "creational", "factory", "Factory Pattern",
          "Creates objects without specifying exact class",
          ("factory", "create"), ("factory", "build")),
    _rule("rest_api", "api_patterns", "rest", "RESTful API", "RESTful API design pattern",
          "rest", "restful"),
    _rule("graphql_api", "api_patterns", "graphql", "GraphQL API", "GraphQL API pattern",
          "graphql"),
    _rule("pub_sub_pattern", "messaging", "pub_sub", "Publish-Subscribe",
          "Publish-Subscribe messaging pattern", "pub/sub", ("publish", "subscribe")),
    _rule("batch_processing", "data_processing", "batch_processing", "Batch Processing",
          "Processing data in batches", ("batch", "process"), ("batch", "job")),
    _rule("stream_processing", "data_processing", "stream_processing", "Stream Processing",
          "Real-time stream data processing", ("stream", "processing")),
    _rule("try_catch_pattern", "error_handling", "try_catch", "Try-Catch Error Handling",
          "Structured error handling using try-catch blocks", ("try", "catch"), ("try", "except"),
          languages=("javascript", "typescript", "java", "python", "csharp")),
    _rule("retry_pattern", "error_handling", "retry_logic", "Retry Logic",
          "Automatic retry on failure", ("retry", "error"), ("retry", "fail")),
    _rule("caching_pattern", "performance", "caching", "Caching Pattern",
          "Using cache for performance optimization", "cache", "caching"),
    _rule("jwt_auth", "security", "jwt", "JWT Authentication",
          "JSON Web Token authentication pattern", "jwt", "json web token"),
    _rule("oauth_pattern", "security", "oauth", "OAuth Authentication",
          "OAuth authentication flow", "oauth"),
    _rule("mock_stub_pattern", "testing", "mock", "Mock/Stub Pattern",
          "Using mocks or stubs for testing", "mock", "stub"),
    _rule("unit_test_pattern", "testing", "unit_test", "Unit Testing",
          "Unit testing pattern for isolated component testing", "unit test", "unittest"),
    _rule("component_pattern", "frontend", "component", "Component-Based Architecture",
          "UI built from reusable components",
          ("component", "react"), ("component", "vue"), ("component", "angular")),
    _rule("responsive_design_pattern", "user_experience", "responsive_design", "Responsive Design",
          "Layouts that adapt to screen size", ("responsive", "design")),
    _rule("aws_platform", "cloud_platforms", "aws", "AWS Cloud Platform",
          "Amazon Web Services cloud usage", "aws", "amazon web services"),
    _rule("serverless_pattern", "cloud_platforms", "serverless", "Serverless Functions",
          "Function-as-a-service deployment", ("lambda", "function"), "serverless"),
    _rule("kubernetes_pattern", "infrastructure_ops", "kubernetes", "Kubernetes Orchestration",
          "Container orchestration with Kubernetes", "kubernetes", "k8s"),
    _rule("kafka_streaming", "data_engineering", "kafka", "Kafka Event Streaming",
          "Event streaming with Apache Kafka", "kafka"),
    _rule("spark_processing", "data_engineering", "spark", "Spark Data Processing",
          "Distributed data processing with Apache Spark", "spark"),
    _rule("agile_process", "process_methodology", "agile", "Agile Methodology",
          "Iterative agile delivery process", "agile", "scrum"),
    _rule("ci_cd_pattern", "process_methodology", "ci_cd", "CI/CD Pipeline",
          "Continuous integration and delivery", "ci/cd", "continuous integration"),
    _rule("blue_green_deploy", "deployment", "blue_green", "Blue-Green Deployment",
          "Zero-downtime deploys across two environments", ("blue", "green", "deploy")),
    _rule("canary_deploy", "deployment", "canary", "Canary Deployment",
          "Gradual rollout to a subset of traffic", ("canary", "deploy")),
    _rule("monitoring_pattern", "observability", "monitoring", "Monitoring",
          "System monitoring and alerting", "monitor", "observability"),
    _rule("distributed_tracing_pattern", "observability", "tracing", "Distributed Tracing",
          "Request tracing across services", "distributed tracing", "tracing"),
    _rule("async_await_pattern", "programming_paradigms", "async_await", "Async/Await",
          "Asynchronous code with async/await", ("async", "await")),
    _rule("functional_paradigm", "programming_paradigms", "functional", "Functional Programming",
          "Functional programming style", ("functional", "programming")),
    _rule("load_balancing_pattern", "network_protocols", "load_balancing", "Load Balancing",
          "Traffic distribution across instances", "load balance", "load balancer"),
    _rule("service_mesh_pattern", "network_protocols", "service_mesh", "Service Mesh",
          "Service-to-service networking layer", "service mesh"),
    _rule("high_availability_pattern", "reliability", "high_availability", "High Availability",
          "Redundancy to avoid downtime", "high availability"),
    _rule("disaster_recovery_pattern", "reliability", "disaster_recovery", "Disaster Recovery",
          "Backup and recovery planning", "disaster recovery"),
    _rule("code_coverage_pattern", "quality_assurance", "code_coverage", "Code Coverage",
          "Tracking test coverage", "code coverage", "test coverage"),
    _rule("static_analysis_pattern", "quality_assurance", "static_analysis", "Static Analysis",
          "Linting and static analysis", "static analysis", "linting"),
    _rule("sorting_algorithm_pattern", "algorithms", "sorting", "Sorting Algorithm",
          "Sorting algorithm usage", ("sorting", "algorithm")),
    _rule("binary_tree_pattern", "algorithms", "binary_tree", "Binary Tree",
          "Tree-based data structures", "binary tree", "b-tree"),
)

CODE_CATEGORIES = frozenset({"error_handling", "performance", "testing", "api_patterns"})


def _keyword_candidates(
    memory: MemoryEvent, rules, confidence: float, method: DetectionMethod
) -> list[PatternCandidate]:
    text = memory.content.lower()
    out = []
    for rule in rules:
        hit = rule.first_hit(text)
        if hit is None:
            continue
        out.append(
            PatternCandidate(
                category=rule.category,
                type=rule.type,
                name=rule.name,
                signature=rule.signature,
                description=rule.description,
                confidence=confidence,
                detection_method=method,
                languages=list(rule.languages),
                example=memory.content[:EXAMPLE_CHARS],
                context=extract_context(memory.content, hit),
            )
        )
    return out


# --- typed matchers ---

_EXPLICIT_RE = re.compile(r"pattern:\s*([^\n]+)", re.IGNORECASE)

ARCHITECTURE_KEYWORDS = {
    "microservices": ("microservice", "micro-service", "service-oriented"),
    "monolithic": ("monolith", "single application"),
    "serverless": ("serverless", "lambda", "functions as a service"),
    "event_driven": ("event-driven", "event sourcing", "cqrs"),
    "layered": ("layered architecture", "n-tier", "three-tier"),
    "hexagonal": ("hexagonal", "ports and adapters", "clean architecture"),
}

DESIGN_PATTERNS = {
    "singleton": (("singleton", "single instance"), "creational"),
    "factory": (("factory pattern", "object creation"), "creational"),
    "builder": (("builder pattern", "fluent interface"), "creational"),
    "adapter": (("adapter pattern", "wrapper"), "structural"),
    "decorator": (("decorator pattern", "wrapper with interface"), "structural"),
    "observer": (("observer pattern", "publish-subscribe"), "behavioral"),
    "strategy": (("strategy pattern", "algorithm family"), "behavioral"),
    "repository": (("repository pattern", "data access layer"), "data_access"),
}

TECH_STACKS = {
    "mean": ("mongodb", "express", "angular", "node"),
    "mern": ("mongodb", "express", "react", "node"),
    "lamp": ("linux", "apache", "mysql", "php"),
    "jamstack": ("javascript", "apis", "markup"),
}

ANTI_PATTERNS = {
    "god_object": ("god object", "too many responsibilities", "bloated class"),
    "spaghetti_code": ("spaghetti code", "tangled", "hard to follow"),
    "copy_paste": ("copy paste", "duplicate code", "code duplication"),
    "magic_numbers": ("magic number", "hardcoded value", "literal values"),
    "callback_hell": ("callback hell", "nested callbacks", "pyramid of doom"),
}

_LESSON_RE = re.compile(r"should have (.+?)(?:\.|\n|$)", re.IGNORECASE)


def match_explicit(memory: MemoryEvent) -> list[PatternCandidate]:
    """``pattern: <name>`` declarations in system_patterns memories."""
    out = []
    for m in _EXPLICIT_RE.finditer(memory.content):
        name = m.group(1).strip()
        slug = slugify(name, max_words=8)
        if not slug:
            continue
        out.append(
            PatternCandidate(
                category="architectural",
                type="documented_pattern",
                name=name,
                signature=f"explicit_{slug}",
                description=f"Explicitly documented pattern: {name}",
                confidence=EXPLICIT_CONFIDENCE,
                detection_method=DetectionMethod.USER_EXPLICIT,
                example=memory.content[:EXAMPLE_CHARS],
                context=extract_context(memory.content, m.group(0)),
            )
        )
    return out


def match_architecture(memory: MemoryEvent) -> list[PatternCandidate]:
    text = memory.content.lower()
    out = []
    for arch, keywords in ARCHITECTURE_KEYWORDS.items():
        hit = next((kw for kw in keywords if contains(text, kw)), None)
        if hit is None:
            continue
        label = arch.replace("_", " ")
        out.append(
            PatternCandidate(
                category="architectural",
                type=arch,
                name=f"{label.capitalize()} Architecture",
                signature=f"arch_{arch}",
                description=f"{label} architectural pattern",
                confidence=TYPED_CONFIDENCE,
                detection_method=DetectionMethod.MEMORY_TYPE,
                example=memory.content[:EXAMPLE_CHARS],
                context=extract_context(memory.content, hit),
            )
        )
    return out


def match_design(memory: MemoryEvent) -> list[PatternCandidate]:
    text = memory.content.lower()
    out = []
    for name, (keywords, family) in DESIGN_PATTERNS.items():
        hit = next((kw for kw in keywords if contains(text, kw)), None)
        if hit is None:
            continue
        out.append(
            PatternCandidate(
                category="design",
                type=name,
                name=f"{name.capitalize()} Pattern",
                signature=f"design_{name}",
                description=f"{family} design pattern: {name}",
                confidence=TYPED_CONFIDENCE,
                detection_method=DetectionMethod.MEMORY_TYPE,
                example=memory.content[:EXAMPLE_CHARS],
                context=extract_context(memory.content, hit),
                metadata={"pattern_family": family},
            )
        )
    return out


def match_code(memory: MemoryEvent) -> list[PatternCandidate]:
    rules = [r for r in KEYWORD_RULES if r.category in CODE_CATEGORIES]
    return _keyword_candidates(memory, rules, CODE_CONFIDENCE, DetectionMethod.KEYWORD)


def match_tech_stack(memory: MemoryEvent) -> list[PatternCandidate]:
    text = memory.content.lower()
    out = []
    for stack, techs in TECH_STACKS.items():
        matched = [t for t in techs if contains(text, t)]
        if len(matched) < 2:
            continue
        out.append(
            PatternCandidate(
                category="tech_stack",
                type=stack,
                name=f"{stack.upper()} Stack",
                signature=f"stack_{stack}",
                description=f"{stack.upper()} technology stack",
                confidence=TECH_CONFIDENCE,
                detection_method=DetectionMethod.MEMORY_TYPE,
                languages=list(techs),
                example=memory.content[:EXAMPLE_CHARS],
                metadata={"stack_coverage": round(len(matched) / len(techs), 2)},
            )
        )
    return out


def match_anti_patterns(memory: MemoryEvent) -> list[PatternCandidate]:
    text = memory.content.lower()
    out = []
    for anti, keywords in ANTI_PATTERNS.items():
        hit = next((kw for kw in keywords if contains(text, kw)), None)
        if hit is None:
            continue
        label = anti.replace("_", " ")
        out.append(
            PatternCandidate(
                category=ANTI_PATTERN_CATEGORY,
                type=anti,
                name=f"Anti-pattern: {label}",
                signature=f"anti_{anti}",
                description=f"Detected anti-pattern: {label}",
                confidence=BUG_CONFIDENCE,
                detection_method=DetectionMethod.MEMORY_TYPE,
                example=memory.content[:EXAMPLE_CHARS],
                context=extract_context(memory.content, hit),
                metadata={"source_type": "bug_report"},
            )
        )
    return out


def match_lessons(memory: MemoryEvent) -> list[PatternCandidate]:
    m = _LESSON_RE.search(memory.content)
    if not m:
        return []
    lesson = m.group(1).strip()
    slug = slugify(lesson)
    if not slug:
        return []
    return [
        PatternCandidate(
            category="best_practice",
            type="improvement",
            name="Improvement Opportunity",
            signature=f"lesson_{slug}",
            description=f"Lesson learned: {lesson}",
            confidence=TYPED_CONFIDENCE,
            detection_method=DetectionMethod.MEMORY_TYPE,
            example=memory.content[:EXAMPLE_CHARS],
            context=extract_context(memory.content, m.group(0)),
        )
    ]


def match_keywords(memory: MemoryEvent) -> list[PatternCandidate]:
    return _keyword_candidates(memory, KEYWORD_RULES, KEYWORD_CONFIDENCE, DetectionMethod.KEYWORD)


# Priority order: explicit > architecture > design > code > tech > bug > lessons
TYPED_MATCHERS: dict[str, Matcher] = {
    MemoryType.SYSTEM_PATTERNS: match_explicit,
    MemoryType.ARCHITECTURE: match_architecture,
    MemoryType.DESIGN_DECISIONS: match_design,
    MemoryType.CODE: match_code,
    MemoryType.IMPLEMENTATION_NOTES: match_code,
    MemoryType.TECH_CONTEXT: match_tech_stack,
    MemoryType.BUG: match_anti_patterns,
    MemoryType.LESSONS_LEARNED: match_lessons,
}


def extract_candidates(memory: MemoryEvent) -> list[PatternCandidate]:
    """All candidates for one memory, unique by signature."""
    typed = TYPED_MATCHERS.get(memory.memory_type)
    candidates = typed(memory) if typed else []
    if not candidates:
        candidates = match_keywords(memory)

    seen: set[str] = set()
    unique = []
    for c in candidates:
        if c.signature not in seen:
            seen.add(c.signature)
            unique.append(c)
    return unique
