"""
Domain readiness checks.

Lookups rotate over a fixed pool of resolvers, one query per attempt. Failing
to confirm a domain is never an error: DNS propagation and CDN fronting are
expected, so exhaustion only produces a warning and hands back the input.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

import dns.asyncresolver
import dns.resolver
from pydantic import BaseModel

from .events import ProgressBus, ProgressNotifier
from .models import ProgressScope
from .retry import RetryPolicy, RoundRobinPool, poll_until

logger = logging.getLogger(__name__)

PUBLIC_RESOLVERS = {
    "google": ["8.8.8.8", "8.8.4.4"],
    "cloudflare": ["1.1.1.1", "1.0.0.1"],
    "quad9": ["9.9.9.9", "149.112.112.112"],
}

CNAME_CHECK_POLICY = RetryPolicy.fixed(delay=5, attempts=30)
DOMAIN_CHECK_POLICY = RetryPolicy.fixed(delay=3, attempts=100)


class DnsResolver:
    """A named resolver answering CNAME or address lookups."""

    def __init__(self, name: str, resolver: dns.asyncresolver.Resolver):
        self.name = name
        self._resolver = resolver
        # Some providers force caching, which leads to stale answers
        self._resolver.cache = None

    def __repr__(self) -> str:
        return f"DnsResolver({self.name})"

    async def lookup(self, domain: str, record_type: str) -> List[str]:
        if record_type == "CNAME":
            answer = await self._resolver.resolve(domain, "CNAME")
            return [str(record.target) for record in answer]

        answers = await self._resolver.resolve_name(domain)
        return list(answers.addresses())


def default_resolvers() -> List[DnsResolver]:
    """Public resolvers followed by the system one."""
    resolvers = []
    for name, nameservers in PUBLIC_RESOLVERS.items():
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = list(nameservers)
        resolvers.append(DnsResolver(name, resolver))

    try:
        resolvers.append(DnsResolver("system", dns.asyncresolver.Resolver()))
    except dns.resolver.NoResolverConfiguration as e:
        logger.warning(f"System DNS resolver is not configured, skipping it: {e}")

    return resolvers


class ProbeResult(BaseModel):
    """Outcome of a readiness check. ``value`` is the input when unconfirmed."""

    domain: str
    value: str
    confirmed: bool
    attempts: int


class ReadinessProber:
    """Best-effort DNS readiness checker."""

    def __init__(
        self,
        bus: ProgressBus,
        resolvers: Optional[Sequence[DnsResolver]] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        cname_policy: RetryPolicy = CNAME_CHECK_POLICY,
        domain_policy: RetryPolicy = DOMAIN_CHECK_POLICY,
    ):
        self.bus = bus
        self._resolvers = list(resolvers) if resolvers is not None else None
        self.sleep = sleep
        self.cname_policy = cname_policy
        self.domain_policy = domain_policy

    @property
    def resolvers(self) -> List[DnsResolver]:
        if self._resolvers is None:
            self._resolvers = default_resolvers()
        return self._resolvers

    async def check_cname_for(
        self, scope: ProgressScope, cname_to_check: str, execution_id: str
    ) -> ProbeResult:
        """Wait for ``cname_to_check`` to resolve to a CNAME target."""
        notifier = ProgressNotifier(self.bus, scope, execution_id)
        notifier.info(
            f"Checking CNAME resolution of '{cname_to_check}'. "
            "Please wait, it can take some time..."
        )

        delay = self.cname_policy.delay_before(1)

        async def probe(resolver: DnsResolver):
            return await resolver.lookup(cname_to_check, "CNAME")

        def on_retry(attempt: int, error: Optional[str]):
            notifier.info(
                f"Cannot find domain under CNAME {cname_to_check}. "
                f"Retrying in {delay:g} seconds..."
            )

        outcome = await poll_until(
            probe,
            predicate=bool,
            policy=self.cname_policy,
            pool=RoundRobinPool(self.resolvers),
            sleep=self.sleep,
            on_retry=on_retry,
        )

        if outcome.succeeded:
            # A CNAME can only point to one domain
            target = outcome.value[0]
            notifier.info(f"Resolution of CNAME {cname_to_check} found to {target}")
            return ProbeResult(
                domain=cname_to_check,
                value=target,
                confirmed=True,
                attempts=outcome.attempts,
            )

        message = (
            f"Resolution of CNAME {cname_to_check} failed. Please check that you have "
            "correctly configured your CNAME. If you are using a CDN you can forget this message"
        )
        logger.warning(f"{message} (last error: {outcome.last_error})")
        notifier.warn(message)
        return ProbeResult(
            domain=cname_to_check,
            value=cname_to_check,
            confirmed=False,
            attempts=outcome.attempts,
        )

    async def check_domain_for(
        self, scope: ProgressScope, domain: str, execution_id: str
    ) -> ProbeResult:
        """Wait for ``domain`` to resolve to at least one address."""
        notifier = ProgressNotifier(self.bus, scope, execution_id)
        message = (
            f"Let's check domain resolution for '{domain}'. "
            "Please wait, it can take some time..."
        )
        logger.info(message)
        notifier.info(message)

        async def probe(resolver: DnsResolver):
            return await resolver.lookup(domain, "A")

        def on_retry(attempt: int, error: Optional[str]):
            notifier.info(f"Domain resolution check for '{domain}' is still in progress...")

        outcome = await poll_until(
            probe,
            predicate=bool,
            policy=self.domain_policy,
            pool=RoundRobinPool(self.resolvers),
            sleep=self.sleep,
            on_retry=on_retry,
        )

        if outcome.succeeded:
            notifier.info(f"Domain {domain} is ready! ⚡️")
            return ProbeResult(
                domain=domain,
                value=outcome.value[0],
                confirmed=True,
                attempts=outcome.attempts,
            )

        message = (
            f"Unable to check domain availability for '{domain}'. It can be due to a "
            "too long domain propagation. Note: this is not critical."
        )
        logger.warning(message)
        notifier.warn(message)
        return ProbeResult(
            domain=domain, value=domain, confirmed=False, attempts=outcome.attempts
        )

    async def check_domains_for(
        self, scope: ProgressScope, domains: Sequence[str], execution_id: str
    ) -> List[ProbeResult]:
        results = []
        for domain in domains:
            results.append(await self.check_domain_for(scope, domain, execution_id))
        return results
