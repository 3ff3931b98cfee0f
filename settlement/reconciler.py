# settlement/reconciler.py
from datetime import datetime
from typing import Callable, Dict, Optional
import threading
import logging

from extensions import db
from models import Withdrawal, WithdrawalStatus
from settlement.clock import utcnow
from settlement.exceptions import ConfigurationError, ConsistencyError, GatewayUnavailable
from settlement.gateway import GatewayClient
from settlement.withdrawal_state import WithdrawalStateMachine

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Drives non-terminal withdrawals through the state machine using the
    provider's view of each client reference.

    The pending and processing passes see disjoint rows, so the scheduler may
    run them in parallel; inside one pass records are handled one at a time.
    """

    def __init__(self, gateway_factory: Callable = GatewayClient.from_config,
                 state_machine: Optional[WithdrawalStateMachine] = None,
                 stop_event: Optional[threading.Event] = None):
        self.gateway_factory = gateway_factory
        self.state_machine = state_machine or WithdrawalStateMachine()
        self.stop_event = stop_event or threading.Event()

        self._lock = threading.Lock()
        self._running_jobs = set()
        self.run_count = 0
        self.last_run: Optional[datetime] = None
        self.last_results: Dict[str, Dict] = {}

    # ==========================================================
    #                  PERIODIC JOBS
    # ==========================================================
    def verify_pending_withdrawals(self) -> Dict:
        return self._run_cycle(WithdrawalStatus.PENDING.value)

    def verify_processing_withdrawals(self) -> Dict:
        return self._run_cycle(WithdrawalStatus.PROCESSING.value)

    def _run_cycle(self, status: str) -> Dict:
        results = {
            "job": f"verify_{status}_withdrawals",
            "started_at": utcnow().isoformat(),
            "finished_at": None,
            "checked": 0,
            "updated": 0,
            "unchanged": 0,
            "skipped": 0,
            "errors": 0,
            "consistency_errors": 0,
            "configuration_error": None,
            "stopped": False,
        }

        with self._lock:
            self._running_jobs.add(status)
            self.run_count += 1

        gateway = None
        try:
            try:
                gateway = self.gateway_factory()
            except ConfigurationError as e:
                logger.error(f"Reconciler {status} pass not run: {e}")
                results["configuration_error"] = str(e)
                return results

            rows = db.session.query(Withdrawal.id, Withdrawal.client_reference).filter(
                Withdrawal.status == status,
                Withdrawal.needs_review.is_(False),
            ).order_by(Withdrawal.id.asc()).all()
            # release the read transaction before the per-record transactions start
            db.session.commit()

            for withdrawal_id, client_reference in rows:
                if self.stop_event.is_set():
                    results["stopped"] = True
                    logger.info(f"Reconciler {status} pass stopped after {results['checked']} records")
                    break

                results["checked"] += 1
                try:
                    result = gateway.lookup(client_reference)
                except GatewayUnavailable as e:
                    logger.debug(f"Gateway unavailable for {client_reference}, retrying next cycle: {e}")
                    results["skipped"] += 1
                    continue
                except ConfigurationError as e:
                    logger.error(f"Reconciler {status} pass aborted: {e}")
                    results["configuration_error"] = str(e)
                    break
                except Exception as e:
                    logger.error(f"Gateway lookup for {client_reference} failed: {e}")
                    results["errors"] += 1
                    continue

                try:
                    outcome = self.state_machine.advance(withdrawal_id, result)
                except ConsistencyError:
                    results["consistency_errors"] += 1
                    results["errors"] += 1
                    continue
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"Could not advance withdrawal {withdrawal_id} ({client_reference}): {e}")
                    results["errors"] += 1
                    continue

                if outcome.changed:
                    results["updated"] += 1
                else:
                    results["unchanged"] += 1

            return results

        finally:
            results["finished_at"] = utcnow().isoformat()
            if gateway is not None:
                gateway.close()
            with self._lock:
                self._running_jobs.discard(status)
                self.last_run = utcnow()
                self.last_results[status] = results
            logger.info(
                f"Reconciler {status} pass: checked={results['checked']} updated={results['updated']} "
                f"skipped={results['skipped']} errors={results['errors']}"
            )

    # ==========================================================
    #                  MANUAL TRIGGERS & STATUS
    # ==========================================================
    def verify_single(self, withdrawal_id: int) -> Dict:
        """Re-check one withdrawal against the provider right now."""
        withdrawal = Withdrawal.query.get(withdrawal_id)
        if withdrawal is None:
            return {"found": False}
        if withdrawal.is_terminal:
            return {"found": True, "changed": False, "status": withdrawal.status}

        try:
            gateway = self.gateway_factory()
        except ConfigurationError as e:
            return {"found": True, "changed": False, "status": withdrawal.status,
                    "configuration_error": str(e)}
        try:
            result = gateway.lookup(withdrawal.client_reference)
        except ConfigurationError as e:
            return {"found": True, "changed": False, "status": withdrawal.status,
                    "configuration_error": str(e)}
        except GatewayUnavailable as e:
            return {"found": True, "changed": False, "status": withdrawal.status,
                    "gateway_unavailable": str(e)}
        finally:
            gateway.close()

        outcome = self.state_machine.advance(withdrawal_id, result)
        return {
            "found": True,
            "changed": outcome.changed,
            "previous_status": outcome.previous_status,
            "status": outcome.new_status,
            "gateway_status": result.status,
        }

    def status(self) -> Dict:
        with self._lock:
            return {
                "is_running": bool(self._running_jobs),
                "running_jobs": sorted(self._running_jobs),
                "last_run": self.last_run.isoformat() if self.last_run else None,
                "run_count": self.run_count,
                "last_results": dict(self.last_results),
            }
