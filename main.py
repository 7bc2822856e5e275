from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from csv_utils import export_transactions
from models import DeleteScope, TransactionKind
from outcomes import Outcome, OutcomeStatus
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountPatch,
    LiabilityIn,
    RebaseIn,
    RecurringRuleIn,
    TransactionIn,
    TransactionPatch,
)
from services import TransactionFilters
from storage import PersistenceError
from tracker import FinanceTracker


def unwrap(outcome: Outcome):
    if outcome.status == OutcomeStatus.not_found:
        raise HTTPException(status_code=404, detail=outcome.error)
    if outcome.status == OutcomeStatus.invalid:
        raise HTTPException(status_code=400, detail=outcome.error)
    return outcome.value


def get_tracker(request: Request) -> FinanceTracker:
    return request.app.state.tracker


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    kind_param = request.query_params.get("kind")
    kind = None
    if kind_param:
        try:
            kind = TransactionKind(kind_param)
        except ValueError:
            kind = None
    return TransactionFilters(
        kind=kind,
        account_id=request.query_params.get("account_id") or None,
        category=request.query_params.get("category") or None,
        recurring_rule_id=request.query_params.get("rule_id") or None,
    )


def create_app(
    tracker: Optional[FinanceTracker] = None, *, start_scheduler: bool = True
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "tracker", None) is None:
            app.state.tracker = FinanceTracker.from_settings()
            app.state.tracker.load()
        scheduler_manager = None
        if start_scheduler:
            scheduler_manager = SchedulerManager(app.state.tracker)
            scheduler_manager.start()
        yield
        if scheduler_manager is not None:
            scheduler_manager.stop()

    app = FastAPI(title="Finance Tracker", lifespan=lifespan)
    app.state.tracker = tracker

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        return JSONResponse(
            status_code=503,
            content={"detail": f"{exc}; changes are kept in memory and will be retried"},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        detail = "; ".join(err["msg"] for err in exc.errors())
        return JSONResponse(status_code=400, content={"detail": detail})

    @app.get("/api/accounts")
    def list_accounts(tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            return tracker.accounts.list()

    @app.post("/api/accounts", status_code=201)
    def create_account(data: AccountIn, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.accounts.create(data)
        return unwrap(outcome)

    @app.patch("/api/accounts/{account_id}")
    def update_account(
        account_id: str, data: AccountPatch, tracker: FinanceTracker = Depends(get_tracker)
    ):
        with tracker.unit_of_work():
            outcome = tracker.accounts.update(account_id, data.name, data.asset_type)
        return unwrap(outcome)

    @app.put("/api/accounts/{account_id}/base")
    def rebase_account(
        account_id: str, data: RebaseIn, tracker: FinanceTracker = Depends(get_tracker)
    ):
        with tracker.unit_of_work():
            outcome = tracker.synchronizer.rebase(account_id, data.base_cents)
        value = unwrap(outcome)
        return {"account_id": account_id, "value_cents": value}

    @app.post("/api/accounts/{account_id}/recompute")
    def recompute_account(account_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.synchronizer.recompute_account(account_id)
        value = unwrap(outcome)
        return {"account_id": account_id, "value_cents": value}

    @app.get("/api/balances/drift")
    def balance_drift(tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            drifts = tracker.synchronizer.check_drift()
        return [
            {
                "account_id": drift.account_id,
                "incremental_cents": drift.incremental_cents,
                "recomputed_cents": drift.recomputed_cents,
            }
            for drift in drifts
        ]

    @app.get("/api/transactions")
    def list_transactions(request: Request, tracker: FinanceTracker = Depends(get_tracker)):
        period = period_from_request(request)
        filters = filters_from_request(request)
        with tracker.read():
            return tracker.ledger.list_by_period(period, filters)

    @app.get("/api/transactions/export.csv")
    def export_transactions_endpoint(
        request: Request, tracker: FinanceTracker = Depends(get_tracker)
    ):
        period = period_from_request(request)
        filters = filters_from_request(request)
        with tracker.read():
            records = tracker.ledger.list_by_period(period, filters)
            csv_text = export_transactions(records, tracker.accounts.name_of)
        filename = "transactions.csv"
        if period.slug != "all":
            filename = f"transactions_{period.start}_{period.end}.csv"
        return StreamingResponse(
            iter([csv_text]),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/transactions", status_code=201)
    def create_transaction(data: TransactionIn, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.ledger.add(data)
        return unwrap(outcome)

    @app.get("/api/transactions/{transaction_id}")
    def get_transaction(transaction_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            outcome = tracker.ledger.get(transaction_id)
        return unwrap(outcome)

    @app.patch("/api/transactions/{transaction_id}")
    def update_transaction(
        transaction_id: str,
        data: TransactionPatch,
        tracker: FinanceTracker = Depends(get_tracker),
    ):
        with tracker.unit_of_work():
            outcome = tracker.ledger.update(transaction_id, data)
        return unwrap(outcome)

    @app.delete("/api/transactions/{transaction_id}")
    def delete_transaction(
        transaction_id: str,
        scope: DeleteScope = DeleteScope.single,
        tracker: FinanceTracker = Depends(get_tracker),
    ):
        with tracker.unit_of_work():
            outcome = tracker.rules.delete_occurrence(transaction_id, scope)
        removed = unwrap(outcome)
        return {"removed": [record.id for record in removed]}

    @app.get("/api/rules")
    def list_rules(tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            return tracker.rules.list()

    @app.get("/api/rules/upcoming")
    def upcoming_rules(days: int = 7, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            upcoming = tracker.rules.upcoming(days)
        return [
            {"rule_id": rule.id, "date": slot, "amount_cents": rule.amount_cents, "note": rule.note}
            for rule, slot in upcoming
        ]

    @app.post("/api/rules/materialize")
    def materialize_rules(
        as_of: Optional[date] = None, tracker: FinanceTracker = Depends(get_tracker)
    ):
        created = unwrap(tracker.materialize_due(as_of))
        return {"created": created}

    @app.post("/api/rules", status_code=201)
    def create_rule(data: RecurringRuleIn, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.rules.create(data)
        return unwrap(outcome)

    @app.get("/api/rules/{rule_id}")
    def get_rule(rule_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            outcome = tracker.rules.get(rule_id)
        return unwrap(outcome)

    @app.put("/api/rules/{rule_id}")
    def update_rule(
        rule_id: str, data: RecurringRuleIn, tracker: FinanceTracker = Depends(get_tracker)
    ):
        with tracker.unit_of_work():
            outcome = tracker.rules.update(rule_id, data)
        return unwrap(outcome)

    @app.post("/api/rules/{rule_id}/activate")
    def activate_rule(rule_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.rules.activate(rule_id)
        return unwrap(outcome)

    @app.post("/api/rules/{rule_id}/deactivate")
    def deactivate_rule(rule_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.rules.deactivate(rule_id)
        return unwrap(outcome)

    @app.delete("/api/rules/{rule_id}")
    def delete_rule(rule_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.rules.delete(rule_id)
        removed = unwrap(outcome)
        return {"removed": [record.id for record in removed]}

    @app.get("/api/rules/{rule_id}/preview")
    def preview_rule(
        rule_id: str,
        months: Optional[int] = None,
        tracker: FinanceTracker = Depends(get_tracker),
    ):
        with tracker.read():
            outcome = tracker.rules.preview_future(rule_id, months)
            dates = list(outcome.value) if outcome.ok else []
        unwrap(outcome)
        return {"rule_id": rule_id, "dates": dates}

    @app.get("/api/liabilities")
    def list_liabilities(tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            return tracker.accounts.list_liabilities()

    @app.post("/api/liabilities", status_code=201)
    def create_liability(data: LiabilityIn, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.liabilities.save(data)
        return unwrap(outcome)

    @app.put("/api/liabilities/{liability_id}")
    def update_liability(
        liability_id: str, data: LiabilityIn, tracker: FinanceTracker = Depends(get_tracker)
    ):
        unwrap(tracker.accounts.get_liability(liability_id))
        with tracker.unit_of_work():
            outcome = tracker.liabilities.save(data.model_copy(update={"id": liability_id}))
        return unwrap(outcome)

    @app.get("/api/liabilities/{liability_id}/rule")
    def liability_rule(liability_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.read():
            outcome = tracker.accounts.get_liability(liability_id)
            rule = tracker.liabilities.rule_for(liability_id)
        unwrap(outcome)
        return rule

    @app.delete("/api/liabilities/{liability_id}")
    def delete_liability(liability_id: str, tracker: FinanceTracker = Depends(get_tracker)):
        with tracker.unit_of_work():
            outcome = tracker.liabilities.delete(liability_id)
        return unwrap(outcome)

    @app.post("/api/refresh")
    def force_refresh(tracker: FinanceTracker = Depends(get_tracker)):
        tracker.force_refresh()
        return {"pending": sorted(tracker.pending)}

    @app.post("/api/sync/push")
    def push_remote(tracker: FinanceTracker = Depends(get_tracker)):
        snapshot = unwrap(tracker.push_remote())
        return {"transactions": len(snapshot.transactions), "rules": len(snapshot.rules)}

    @app.post("/api/sync/pull")
    def pull_remote(tracker: FinanceTracker = Depends(get_tracker)):
        snapshot = unwrap(tracker.pull_remote())
        return {"transactions": len(snapshot.transactions), "rules": len(snapshot.rules)}

    @app.post("/api/sync/retry")
    def retry_pending(tracker: FinanceTracker = Depends(get_tracker)):
        return {"pending": sorted(tracker.retry_pending())}

    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
