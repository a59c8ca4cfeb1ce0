"""
Tests for SLA policies: validation, default ladder, resolution order,
caching and the YAML policy file.
"""

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from opsqueue.config import ROLE_NOTIFICATION_CHANNELS, Role, channels_for_roles
from opsqueue.core import PolicyNotFoundException
from opsqueue.sla.application import PolicyCache, PolicyResolver
from opsqueue.sla.domain import EscalationRule, SLAPolicy, default_ladder
from opsqueue.sla.infrastructure import PolicyConfigManager

from tests.conftest import InMemoryPolicyRepository, StaticPolicySource, make_policy

REPO_POLICY_FILE = Path(__file__).resolve().parent.parent / "sla_policies.yaml"


class TestPolicyValidation:
    """Threshold ordering and ladder shape."""

    def test_valid_policy(self):
        policy = make_policy()

        assert policy.baseline_hours == 48
        assert policy.is_active is True
        assert policy.is_default is False

    @pytest.mark.parametrize("baseline, warning, critical", [
        (48, 24, 24),   # critical == warning
        (48, 4, 24),    # critical > warning
        (24, 48, 4),    # warning > baseline
    ])
    def test_threshold_ordering_rejected(self, baseline, warning, critical):
        with pytest.raises(ValidationError):
            make_policy(
                baseline_hours=baseline,
                warning_threshold_hours=warning,
                critical_threshold_hours=critical,
            )

    def test_warning_may_equal_baseline(self):
        policy = make_policy(baseline_hours=24, warning_threshold_hours=24, critical_threshold_hours=4)

        assert policy.warning_threshold_hours == policy.baseline_hours

    def test_zero_baseline_rejected(self):
        with pytest.raises(ValidationError):
            make_policy(baseline_hours=0, warning_threshold_hours=0, critical_threshold_hours=0)

    def test_ladder_levels_must_increase(self):
        with pytest.raises(ValidationError):
            make_policy(escalation_rules=[
                {"level": 2, "after_hours": 10, "notify": ["ops_manager"]},
                {"level": 1, "after_hours": 20, "notify": ["ops_executive"]},
            ])

    def test_ladder_hours_must_not_decrease(self):
        with pytest.raises(ValidationError):
            make_policy(escalation_rules=[
                {"level": 1, "after_hours": 30, "notify": ["ops_executive"]},
                {"level": 2, "after_hours": 20, "notify": ["ops_manager"]},
            ])

    def test_unknown_role_rejected(self):
        with pytest.raises(ValidationError):
            EscalationRule(level=1, after_hours=10, notify=["night_watchman"])

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            make_policy(grace_hours=3)

    def test_pause_conditions_normalized(self):
        policy = make_policy(pause_conditions=[" Waiting_Client", "waiting_client", "DOCUMENTS_PENDING", ""])

        assert policy.pause_conditions == ["waiting_client", "documents_pending"]
        assert policy.pauses_on("Waiting_Client ")
        assert not policy.pauses_on("in_progress")
        assert not policy.pauses_on(None)


class TestDefaultLadder:
    """Ladder derived from the baseline when none is configured."""

    def test_default_ladder_fractions(self):
        ladder = make_policy().ladder()

        assert [rule.level for rule in ladder] == [1, 2, 3, 4]
        assert [rule.after_hours for rule in ladder] == [24, 36, 43.2, 48]
        assert ladder[0].notify == [Role.OPS_EXECUTIVE]
        assert ladder[1].notify == [Role.OPS_MANAGER]
        assert ladder[2].notify == [Role.OPS_MANAGER, Role.ADMIN]
        assert ladder[3].notify == [Role.ADMIN, Role.SUPER_ADMIN]

    def test_only_last_rung_is_breach(self):
        flags = [rule.is_breach_for(48) for rule in default_ladder(48)]

        assert flags == [False, False, False, True]

    def test_ladder_follows_extended_baseline(self):
        ladder = make_policy().ladder(baseline_hours=96)

        assert ladder[-1].after_hours == 96

    def test_configured_ladder_wins(self):
        policy = make_policy(escalation_rules=[
            {"level": 1, "after_hours": 12, "notify": ["ops_lead"], "reassign_to_role": "ops_manager"},
        ])

        assert policy.ladder(baseline_hours=500) == policy.escalation_rules
        assert policy.ladder()[0].reassign_to_role == Role.OPS_MANAGER


class TestPolicyResolver:
    """Stored policy, then policy file, then system default."""

    async def test_stored_policy_wins_over_file(self, settings, policy_source):
        stored = make_policy(baseline_hours=30, warning_threshold_hours=12, critical_threshold_hours=2)
        resolver = PolicyResolver(settings, InMemoryPolicyRepository([stored]), policy_source)

        policy = await resolver.resolve("gst_registration")

        assert policy.baseline_hours == 30

    async def test_file_policy_used_when_nothing_stored(self, resolver):
        policy = await resolver.resolve("gst_registration")

        assert policy.baseline_hours == 48
        assert policy.pause_conditions == ["waiting_client", "documents_pending"]

    async def test_unknown_service_type_gets_default(self, resolver, caplog):
        with caplog.at_level(logging.WARNING):
            policy = await resolver.resolve("trademark_renewal")

        assert policy.is_default is True
        assert policy.service_type == "trademark_renewal"
        assert (policy.baseline_hours, policy.warning_threshold_hours, policy.critical_threshold_hours) == (72, 24, 4)
        assert "SLA configuration gap" in caplog.text

    async def test_find_raises_for_unknown_service_type(self, resolver):
        with pytest.raises(PolicyNotFoundException):
            await resolver.find("trademark_renewal")

    async def test_inactive_stored_policy_skipped(self, settings, policy_source, caplog):
        inactive = make_policy(baseline_hours=10, warning_threshold_hours=5, critical_threshold_hours=1, is_active=False)
        resolver = PolicyResolver(settings, InMemoryPolicyRepository([inactive]), policy_source)

        with caplog.at_level(logging.WARNING):
            policy = await resolver.resolve("gst_registration")

        assert policy.baseline_hours == 48
        assert "Inactive stored SLA policy ignored" in caplog.text

    async def test_invalid_stored_policy_skipped(self, settings, policy_repo, caplog):
        policy_repo.invalid.add("gst_registration")
        resolver = PolicyResolver(settings, policy_repo, StaticPolicySource())

        with caplog.at_level(logging.WARNING):
            policy = await resolver.resolve("gst_registration")

        assert policy.is_default is True
        assert "Invalid stored SLA policy ignored" in caplog.text

    async def test_resolution_is_cached_until_ttl(self, resolver, policy_repo, clock):
        await resolver.resolve("gst_registration")
        await resolver.resolve("gst_registration")
        assert policy_repo.reads == 1

        clock.advance(seconds=301)
        await resolver.resolve("gst_registration")
        assert policy_repo.reads == 2

    async def test_zero_ttl_disables_cache(self, settings, policy_repo, policy_source):
        resolver = PolicyResolver(settings, policy_repo, policy_source, cache=PolicyCache(ttl_seconds=0))

        await resolver.resolve("gst_registration")
        await resolver.resolve("gst_registration")

        assert policy_repo.reads == 2

    def test_invalidate_during_expiry_check(self, clock):
        cache = PolicyCache(ttl_seconds=300, clock=lambda: clock())
        cache.put(make_policy())
        clock.advance(seconds=301)

        def clock_that_reloads():
            cache.invalidate()
            return clock()

        cache._clock = clock_that_reloads

        assert cache.get("gst_registration") is None
        assert len(cache) == 0

    def test_expired_entry_does_not_drop_fresh_put(self, clock):
        cache = PolicyCache(ttl_seconds=300, clock=lambda: clock())
        cache.put(make_policy(baseline_hours=48))
        clock.advance(seconds=301)
        fresh = make_policy(baseline_hours=60)

        def clock_that_refreshes():
            now = clock()
            cache._clock = clock
            cache.put(fresh)
            return now

        cache._clock = clock_that_refreshes

        assert cache.get("gst_registration") is None
        assert cache.get("gst_registration") is fresh

    async def test_save_invalidates_cached_resolution(self, resolver):
        assert (await resolver.resolve("gst_registration")).baseline_hours == 48

        await resolver.save(make_policy(baseline_hours=36, warning_threshold_hours=12, critical_threshold_hours=3))

        assert (await resolver.resolve("gst_registration")).baseline_hours == 36

    async def test_save_without_repository(self, settings):
        resolver = PolicyResolver(settings)

        with pytest.raises(RuntimeError):
            await resolver.save(make_policy())

    async def test_list_policies_merges_sources(self, settings, policy_source):
        stored = [
            make_policy(baseline_hours=30, warning_threshold_hours=12, critical_threshold_hours=2),
            make_policy(service_type="annual_compliance", baseline_hours=120, warning_threshold_hours=36),
        ]
        resolver = PolicyResolver(settings, InMemoryPolicyRepository(stored), policy_source)

        policies = await resolver.list_policies()

        assert [p.service_type for p in policies] == ["annual_compliance", "gst_registration"]
        assert policies[1].baseline_hours == 30

    async def test_policies_for_resolves_each_type_once(self, resolver, policy_repo):
        policies = await resolver.policies_for(["gst_registration", "gst_registration", "other"])

        assert set(policies) == {"gst_registration", "other"}
        assert policy_repo.reads == 2


class TestPolicyConfigManager:
    """YAML policy file loading."""

    def test_loads_repository_policy_file(self):
        manager = PolicyConfigManager()

        policies = manager.load(REPO_POLICY_FILE)

        assert {p.service_type for p in policies} == {
            "gst_registration", "company_incorporation", "trademark_filing", "annual_compliance",
        }
        incorporation = manager.get_policy("company_incorporation")
        assert incorporation.ladder()[1].reassign_to_role == Role.OPS_LEAD

    def test_invalid_entries_skipped(self, tmp_path, caplog):
        path = tmp_path / "policies.yaml"
        path.write_text(
            "policies:\n"
            "  - service_type: good\n"
            "    baseline_hours: 48\n"
            "  - service_type: bad\n"
            "    baseline_hours: 10\n"
            "    warning_threshold_hours: 24\n"
        )
        manager = PolicyConfigManager()

        with caplog.at_level(logging.WARNING):
            policies = manager.load(path)

        assert [p.service_type for p in policies] == ["good"]
        assert manager.get_policy("bad") is None
        assert "Invalid SLA policy in file skipped" in caplog.text

    def test_missing_file_gives_no_policies(self, tmp_path):
        manager = PolicyConfigManager()

        assert manager.load(tmp_path / "absent.yaml") == []

    def test_reload_picks_up_changes_and_notifies(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text("policies:\n  - service_type: gst_registration\n    baseline_hours: 48\n")
        reloads = []
        manager = PolicyConfigManager(on_reload=lambda: reloads.append(True))
        manager.load(path)

        path.write_text("policies:\n  - service_type: gst_registration\n    baseline_hours: 60\n")

        assert manager.reload() is True
        assert manager.get_policy("gst_registration").baseline_hours == 60
        assert reloads == [True]

    def test_broken_reload_keeps_previous_policies(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text("policies:\n  - service_type: gst_registration\n    baseline_hours: 48\n")
        manager = PolicyConfigManager()
        manager.load(path)

        path.write_text("policies: [unclosed\n")

        assert manager.reload() is False
        assert manager.get_policy("gst_registration").baseline_hours == 48


class TestRoles:
    """Role to notification channel table."""

    def test_every_role_has_channels(self):
        for role in Role:
            assert ROLE_NOTIFICATION_CHANNELS[role]

    def test_channels_deduplicated_in_order(self):
        channels = channels_for_roles([Role.ADMIN, Role.OPS_EXECUTIVE, "accountant"])

        assert channels == ["email", "sms", "in_app"]
