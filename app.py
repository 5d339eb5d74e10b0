"""Streamlit lead tracker for the Kobber auto-parts counter."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import streamlit as st

from kobber_crm import (
    AppConfig,
    AuthError,
    AuthService,
    Database,
    DuplicateCustomerLookup,
    Opportunity,
    OpportunityNotFoundError,
    OpportunityRepository,
    OpportunityValidationError,
    SessionUser,
    UserRepository,
    configure_logging,
    load_config,
)
from kobber_crm import aggregation, classification, exports, models
from kobber_crm.repositories import LiveQuery, to_dataframe


CONFIG = load_config()
configure_logging(CONFIG.log_level)
logger = logging.getLogger("kobber_crm.app")

ALL_MONTHS = "all"
ALL_BUCKETS = "all"
OUTCOME_LABELS = {True: "Sale", False: "No sale"}
VIEW_FORM = "Form"
VIEW_ADMIN = "Admin panel"


# ---------------------------------------------------------------------------
# Application services
# ---------------------------------------------------------------------------


@dataclass
class Services:
    config: AppConfig
    database: Database
    users: UserRepository
    opportunities: OpportunityRepository
    auth: AuthService


def build_services(config: AppConfig) -> Services:
    database = Database.from_config(config)
    database.init_schema()
    users = UserRepository(database)
    services = Services(
        config=config,
        database=database,
        users=users,
        opportunities=OpportunityRepository(database),
        auth=AuthService(config, users),
    )
    try:
        services.auth.seed_admin(
            os.getenv("KOBBER_ADMIN_EMAIL"), os.getenv("KOBBER_ADMIN_PASSWORD")
        )
    except ValueError as exc:
        logger.warning("Could not seed the administrator account: %s", exc)
    services.auth.on_auth_state_changed(_on_auth_state_changed)
    return services


@st.cache_resource
def get_services() -> Services:
    return build_services(CONFIG)


def rerun() -> None:
    """Trigger a Streamlit rerun across supported versions."""

    if hasattr(st, "rerun"):
        st.rerun()
        return
    if hasattr(st, "experimental_rerun"):
        st.experimental_rerun()
        return
    raise RuntimeError("Streamlit rerun function not available")


def _on_auth_state_changed(user: Optional[SessionUser]) -> None:
    if user is None:
        feed = st.session_state.get("recent_feed")
        if feed is not None:
            feed.close()
        for key in list(st.session_state.keys()):
            del st.session_state[key]
        return
    st.session_state["user"] = user


# ---------------------------------------------------------------------------
# Form state helpers
# ---------------------------------------------------------------------------


def form_key(field: str) -> str:
    return f"form_{field}"


def load_form_state(form: Dict[str, Any]) -> None:
    for field in models.FORM_FIELDS:
        st.session_state[form_key(field)] = form.get(field)


def collect_form_state() -> Dict[str, Any]:
    return {field: st.session_state.get(form_key(field)) for field in models.FORM_FIELDS}


def reset_form() -> None:
    load_form_state(models.empty_form())
    st.session_state.pop("editing_id", None)
    lookup = st.session_state.get("lookup")
    if lookup is not None:
        lookup.reset()


def request_form_reset() -> None:
    st.session_state["form_reset_requested"] = True


def start_edit(record: Opportunity) -> None:
    st.session_state["pending_form"] = models.form_from_opportunity(record)
    st.session_state["pending_editing_id"] = record.id
    st.session_state["pending_view"] = VIEW_FORM


def apply_pending_form_state() -> None:
    """Apply queued resets and edits before any form widget is created."""

    pending = st.session_state.pop("pending_form", None)
    if pending is not None:
        reset_form()
        load_form_state(pending)
        editing_id = st.session_state.pop("pending_editing_id", None)
        st.session_state["editing_id"] = editing_id
        lookup = _session_lookup(get_services())
        lookup.schedule(pending.get("customer_phone") or "", exclude_id=editing_id)
        lookup.flush()
        return
    if st.session_state.pop("form_reset_requested", False) or form_key("customer_name") not in st.session_state:
        reset_form()


def submit_opportunity(
    services: Services,
    user: SessionUser,
    form: Dict[str, Any],
    editing_id: Optional[str] = None,
) -> str:
    """Create a new record, or overwrite ``editing_id`` in place."""

    built = models.build_opportunity(form, user.email, user.user_id)
    if editing_id:
        original = services.opportunities.get(editing_id)
        services.opportunities.update(editing_id, models.apply_edit(original, built))
        return editing_id
    return services.opportunities.create(built)


def _format_amount_input() -> None:
    key = form_key("sale_amount")
    st.session_state[key] = models.format_brl_input(st.session_state.get(key))


def _session_lookup(services: Services) -> DuplicateCustomerLookup:
    lookup = st.session_state.get("lookup")
    if lookup is None:
        lookup = DuplicateCustomerLookup(
            services.opportunities,
            min_digits=services.config.lookup_min_digits,
            debounce_seconds=services.config.lookup_debounce_ms / 1000,
        )
        st.session_state["lookup"] = lookup
    return lookup


def _on_phone_change() -> None:
    lookup = _session_lookup(get_services())
    lookup.schedule(
        st.session_state.get(form_key("customer_phone")) or "",
        exclude_id=st.session_state.get("editing_id"),
    )
    lookup.flush()


# ---------------------------------------------------------------------------
# Admin view helpers
# ---------------------------------------------------------------------------


def records_for_admin_view(
    records: Sequence[Opportunity],
    month: str,
    bucket: str,
    rules: Sequence[classification.ClassificationRule],
) -> List[Opportunity]:
    selected = aggregation.filter_by_month(records, None if month == ALL_MONTHS else month)
    return classification.filter_by_bucket(
        selected, None if bucket == ALL_BUCKETS else bucket, rules
    )


def summary_caption(summary: aggregation.MonthlySummary) -> str:
    return (
        f"{aggregation.month_label(summary.month)}: "
        f"{models.format_brl(summary.total_amount, symbol=True)} in {summary.sales_count} sale(s), "
        f"{summary.losses_count} loss(es), conversion {summary.conversion_rate:.1%}"
    )


def record_label(record: Opportunity) -> str:
    created = exports.format_created(record.created_at)
    return f"{created} - {record.customer_name} ({record.outcome_label}) - {record.salesperson_email}"


def _load_rules(services: Services) -> List[classification.ClassificationRule]:
    try:
        return classification.load_rules(services.config.rules_path)
    except classification.ClassificationRuleError as exc:
        st.warning(f"Classification rules are invalid ({exc}); using the defaults.")
        return list(classification.DEFAULT_RULES)


# ---------------------------------------------------------------------------
# Screens
# ---------------------------------------------------------------------------


def login_screen(services: Services) -> None:
    st.title("Kobber CRM")
    st.caption("Restricted access")
    with st.form("login_form"):
        email = st.text_input("Email", placeholder="salesperson@kobber.com.br")
        password = st.text_input("Password", type="password")
        submitted = st.form_submit_button("Sign in", use_container_width=True)
    if submitted:
        try:
            user = services.auth.sign_in(email, password)
        except AuthError as exc:
            st.error(exc.user_message)
            return
        st.success(f"Welcome back, {user.short_name}")
        rerun()


def render_header(services: Services, user: SessionUser) -> None:
    title_col, user_col = st.columns([3, 2])
    with title_col:
        st.title("KOBBER CRM")
    with user_col:
        badge = "🛡️ " if user.is_admin else ""
        st.caption("Signed in as")
        st.markdown(f"{badge}**{user.email}**")
        if st.button("Sign out", key="sign_out", use_container_width=True):
            services.auth.sign_out()
            rerun()


def render_form(services: Services, user: SessionUser) -> None:
    editing_id = st.session_state.get("editing_id")
    message = st.session_state.pop("success_message", None)
    if message:
        st.success(message)

    heading = "Edit record" if editing_id else "New record"
    st.subheader(heading)
    st.caption(f"User: **{user.short_name}**")

    st.markdown("##### 1. Customer")
    st.text_input("Name *", key=form_key("customer_name"), placeholder="Customer name")
    phone_col, email_col = st.columns(2)
    with phone_col:
        st.text_input(
            "Phone",
            key=form_key("customer_phone"),
            placeholder="(00) 00000-0000",
            on_change=_on_phone_change,
        )
    with email_col:
        st.text_input("Email", key=form_key("customer_email"), placeholder="email@customer.com")
    render_duplicate_banner(services)
    city_col, state_col = st.columns([3, 1])
    with city_col:
        st.text_input("City", key=form_key("customer_city"))
    with state_col:
        st.selectbox("State", models.STATES, key=form_key("customer_state"))

    st.markdown("##### 2. Customer type")
    st.radio("Customer type", models.CUSTOMER_TYPES, key=form_key("customer_type"), horizontal=True)
    if st.session_state.get(form_key("customer_type")) == models.CUSTOMER_REPAIR_SHOP:
        st.text_input("Shop name", key=form_key("shop_name"))
        st.text_input("Services / focus", key=form_key("shop_focus"), placeholder="e.g. Suspension...")

    st.markdown("##### 3. Opportunity")
    part_col, vehicle_col = st.columns(2)
    with part_col:
        st.text_input("Part *", key=form_key("part_sought"), placeholder="Part sought")
    with vehicle_col:
        st.text_input("Vehicle", key=form_key("vehicle_model"), placeholder="Model/year")
    st.selectbox(
        "Source",
        ("", *models.SOURCES),
        key=form_key("source"),
        format_func=lambda value: value or "Select...",
    )
    st.selectbox(
        "Sales channel",
        ("", *models.SALES_CHANNELS),
        key=form_key("sales_channel"),
        format_func=lambda value: value or "Select...",
    )

    st.markdown("##### 4. Result")
    st.radio(
        "Outcome",
        (True, False),
        key=form_key("sale_made"),
        horizontal=True,
        format_func=lambda value: OUTCOME_LABELS[value],
    )
    outcome = st.session_state.get(form_key("sale_made"))
    if outcome is True:
        amount_col, payment_col = st.columns(2)
        with amount_col:
            st.text_input(
                "Amount (R$)",
                key=form_key("sale_amount"),
                placeholder="0,00",
                on_change=_format_amount_input,
            )
        with payment_col:
            st.selectbox(
                "Payment method",
                ("", *models.PAYMENT_METHODS),
                key=form_key("payment_method"),
                format_func=lambda value: value or "Select...",
            )
    elif outcome is False:
        st.selectbox(
            "Loss reason",
            ("", *models.LOSS_REASONS),
            key=form_key("loss_reason"),
            format_func=lambda value: value or "Select...",
        )
        if st.session_state.get(form_key("loss_reason")) == models.LOSS_OUT_OF_STOCK:
            st.text_input(
                "Which part was missing?",
                key=form_key("missing_part"),
                placeholder="For purchasing...",
            )

    st.markdown("##### Notes / next step")
    st.text_area("Notes", key=form_key("notes"), placeholder="Details...", label_visibility="collapsed")

    save_col, cancel_col = st.columns([3, 1])
    with save_col:
        save = st.button("SAVE", type="primary", use_container_width=True)
    with cancel_col:
        cancel = st.button("Cancel edit" if editing_id else "Clear", use_container_width=True)
    if cancel:
        request_form_reset()
        rerun()
    if save:
        try:
            submit_opportunity(services, user, collect_form_state(), editing_id)
        except OpportunityValidationError as exc:
            st.error(str(exc))
            return
        except OpportunityNotFoundError:
            st.error("This record no longer exists; it may have been deleted.")
            request_form_reset()
            return
        except Exception as exc:
            logger.exception("Saving opportunity failed")
            st.error(f"Error while saving: {exc}")
            return
        request_form_reset()
        st.session_state["success_message"] = "Record updated!" if editing_id else "Record saved!"
        rerun()


def render_duplicate_banner(services: Services) -> None:
    match = _session_lookup(services).run_pending()
    if match is None:
        return
    created = exports.format_created(match.created_at)
    st.info(
        f"Returning customer: **{match.customer_name}** was served on {created} by "
        f"{match.salesperson_email} ({match.outcome_label.lower()}, "
        f"{match.part_sought or 'no part recorded'})."
    )


def recent_feed(services: Services) -> LiveQuery:
    feed = st.session_state.get("recent_feed")
    if feed is None or not feed.active:
        feed = LiveQuery(services.opportunities, limit=services.config.recent_limit)
        st.session_state["recent_feed"] = feed
    return feed


def render_recent(services: Services) -> None:
    st.markdown("#### Recent")
    records = recent_feed(services).records
    if not records:
        st.caption("No records yet.")
        return
    for record in records:
        vehicle_part = " - ".join(part for part in (record.vehicle_model, record.part_sought) if part)
        status = "🟢 SALE" if record.sale_made else "🔴 LOSS"
        st.markdown(f"**{record.customer_name}** · {vehicle_part or '-'} · {status}")


def _auto_refresh(render):
    fragment = getattr(st, "fragment", None)
    if fragment is None or CONFIG.live_refresh_seconds <= 0:
        return render
    return fragment(run_every=CONFIG.live_refresh_seconds)(render)


def render_dashboard(services: Services, records: Sequence[Opportunity], month: str) -> None:
    summary = aggregation.summarize_month(records, month)
    previous = aggregation.summarize_month(records, aggregation.previous_month(month))

    metric_cols = st.columns(4)
    metric_cols[0].metric("Total sold", models.format_brl(summary.total_amount, symbol=True))
    metric_cols[1].metric(
        "Sales",
        summary.sales_count,
        delta=aggregation.format_metric_delta(summary.sales_count, previous.sales_count),
    )
    metric_cols[2].metric(
        "Losses",
        summary.losses_count,
        delta=aggregation.format_metric_delta(summary.losses_count, previous.losses_count),
        delta_color="inverse",
    )
    metric_cols[3].metric("Conversion", f"{summary.conversion_rate:.1%}")
    st.caption(
        f"Average ticket: {models.format_brl(summary.average_ticket, symbol=True)}"
    )

    left, right = st.columns(2)
    with left:
        st.markdown("##### Sales by salesperson")
        if summary.by_salesperson:
            df = aggregation.breakdown_frame(
                {name: float(total) for name, total in summary.by_salesperson.items()},
                "Salesperson",
                "Total (R$)",
            )
            st.bar_chart(df, x="Salesperson", y="Total (R$)")
        else:
            st.caption("No sales this month.")
    with right:
        st.markdown("##### Loss reasons")
        if summary.by_loss_reason:
            st.dataframe(
                aggregation.breakdown_frame(summary.by_loss_reason, "Reason", "Count"),
                hide_index=True,
                use_container_width=True,
            )
        else:
            st.caption("No losses this month.")

    with st.expander("Sources and channels"):
        source_col, channel_col = st.columns(2)
        source_col.dataframe(
            aggregation.breakdown_frame(summary.by_source, "Source", "Count"),
            hide_index=True,
            use_container_width=True,
        )
        channel_col.dataframe(
            aggregation.breakdown_frame(summary.by_channel, "Channel", "Count"),
            hide_index=True,
            use_container_width=True,
        )


def render_admin_table(
    services: Services,
    records: Sequence[Opportunity],
    month: str,
    rules: Sequence[classification.ClassificationRule],
) -> None:
    bucket = st.selectbox(
        "Classification",
        (ALL_BUCKETS, classification.ONLINE, classification.IN_STORE, classification.UNCLASSIFIED),
        format_func=lambda value: "All" if value == ALL_BUCKETS else classification.BUCKET_LABELS[value],
        key="admin_bucket",
    )
    selected = records_for_admin_view(records, month, bucket, rules)
    counts = classification.bucket_counts(selected, rules)
    st.caption(
        f"{len(selected)} record(s) · online {counts[classification.ONLINE]} · "
        f"in-store {counts[classification.IN_STORE]} · overlapping {counts['overlap']} · "
        f"unclassified {counts[classification.UNCLASSIFIED]}"
    )

    df = to_dataframe(selected)
    df.insert(0, "Bucket", [classification.bucket_label(classification.classify(r, rules)) for r in selected])
    st.dataframe(df, hide_index=True, use_container_width=True)

    export_cols = st.columns(2)
    try:
        csv_bytes = exports.build_csv(selected)
        title = "Kobber CRM - opportunities"
        if month != ALL_MONTHS:
            title = f"{title} - {aggregation.month_label(month)}"
        summary = (
            summary_caption(aggregation.summarize_month(selected, month))
            if month != ALL_MONTHS
            else None
        )
        pdf_bytes = exports.build_pdf(selected, title, summary)
    except exports.ExportError:
        st.error("Export failed. Check the application log.")
    else:
        export_cols[0].download_button(
            "Download CSV",
            data=csv_bytes,
            file_name=exports.export_filename("csv"),
            mime="text/csv",
            use_container_width=True,
        )
        export_cols[1].download_button(
            "Download PDF",
            data=pdf_bytes,
            file_name=exports.export_filename("pdf"),
            mime="application/pdf",
            use_container_width=True,
        )

    if not selected:
        return
    st.markdown("##### Edit or delete")
    by_id = {record.id: record for record in selected}
    chosen_id = st.selectbox(
        "Record",
        list(by_id.keys()),
        format_func=lambda doc_id: record_label(by_id[doc_id]),
        key="admin_record",
    )
    edit_col, delete_col = st.columns(2)
    if edit_col.button("Edit", use_container_width=True):
        start_edit(by_id[chosen_id])
        rerun()
    confirm = delete_col.checkbox("Confirm deletion", key=f"admin_confirm_delete_{chosen_id}")
    if delete_col.button("Delete", use_container_width=True, disabled=not confirm):
        try:
            services.opportunities.delete(chosen_id)
        except OpportunityNotFoundError:
            st.warning("The record was already deleted.")
        except Exception as exc:
            logger.exception("Deleting opportunity %s failed", chosen_id)
            st.error(f"Error while deleting: {exc}")
            return
        st.toast("Record deleted")
        rerun()


def render_rules_editor(services: Services, rules: Sequence[classification.ClassificationRule]) -> None:
    st.caption(
        "A record is online or in-store when one of its rules matches. Patterns are "
        "case-insensitive text fragments of the source or sales channel. Records can "
        "match both buckets, or none."
    )
    df = pd.DataFrame(
        [{"field": r.field, "pattern": r.pattern, "bucket": r.bucket} for r in rules],
        columns=["field", "pattern", "bucket"],
    )
    edited = st.data_editor(
        df,
        num_rows="dynamic",
        use_container_width=True,
        key=f"rules_editor_{st.session_state.get('rules_version', 0)}",
        column_config={
            "field": st.column_config.SelectboxColumn("Field", options=list(classification.RULE_FIELDS), required=True),
            "pattern": st.column_config.TextColumn("Pattern", required=True),
            "bucket": st.column_config.SelectboxColumn("Bucket", options=list(classification.BUCKETS), required=True),
        },
    )
    save_col, reset_col = st.columns(2)
    if save_col.button("Save rules", use_container_width=True):
        rows = edited.dropna(how="all").fillna("").to_dict("records")
        try:
            new_rules = classification.rules_from_dicts(rows)
            classification.save_rules(services.config.rules_path, new_rules)
        except (classification.ClassificationRuleError, OSError) as exc:
            st.error(f"Rules not saved: {exc}")
            return
        st.session_state["rules_version"] = st.session_state.get("rules_version", 0) + 1
        st.toast(f"Saved {len(new_rules)} rule(s).")
        rerun()
    if reset_col.button("Restore defaults", use_container_width=True):
        classification.save_rules(services.config.rules_path, classification.DEFAULT_RULES)
        st.session_state["rules_version"] = st.session_state.get("rules_version", 0) + 1
        rerun()


def render_users(services: Services) -> None:
    users = services.users.list_users()
    if users:
        df = pd.DataFrame(users)[["email", "display_name", "created_at"]]
        df["admin"] = df["email"].map(services.config.is_admin_email)
        st.dataframe(df, hide_index=True, use_container_width=True)
    with st.form("new_user_form", clear_on_submit=True):
        email = st.text_input("Email")
        display_name = st.text_input("Display name")
        password = st.text_input("Temporary password", type="password")
        submitted = st.form_submit_button("Create account")
    if submitted:
        try:
            services.auth.create_user(email, password, display_name or None)
        except ValueError as exc:
            st.error(str(exc))
            return
        st.success(f"Account created for {email.strip().lower()}.")


def render_admin(services: Services) -> None:
    records = services.opportunities.query()
    months = aggregation.available_months(records)
    month = st.selectbox(
        "Month",
        (*months, ALL_MONTHS),
        format_func=lambda value: "All months" if value == ALL_MONTHS else aggregation.month_label(value),
        key="admin_month",
    )

    rules = _load_rules(services)
    dashboard_tab, table_tab, rules_tab, users_tab = st.tabs(
        ["Dashboard", "Records", "Classification rules", "Users"]
    )
    with dashboard_tab:
        if month == ALL_MONTHS:
            st.info("Pick a month to see the dashboard.")
        else:
            render_dashboard(services, records, month)
    with table_tab:
        render_admin_table(services, records, month, rules)
    with rules_tab:
        render_rules_editor(services, rules)
    with users_tab:
        render_users(services)


def main() -> None:
    st.set_page_config(page_title="Kobber CRM", page_icon="🚗", layout="centered")
    services = get_services()

    user: Optional[SessionUser] = st.session_state.get("user")
    if user is None:
        login_screen(services)
        return

    apply_pending_form_state()

    render_header(services, user)
    view = VIEW_FORM
    if user.is_admin:
        pending_view = st.session_state.pop("pending_view", None)
        if pending_view:
            st.session_state["view"] = pending_view
        view = st.radio("View", (VIEW_FORM, VIEW_ADMIN), key="view", horizontal=True, label_visibility="collapsed")
    if view == VIEW_ADMIN:
        render_admin(services)
    else:
        render_form(services, user)
        _auto_refresh(render_recent)(services)


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def _streamlit_runtime_active() -> bool:
    """Return True when running inside a Streamlit runtime."""

    try:
        from streamlit import runtime as st_runtime
    except ImportError:
        return False
    return bool(st_runtime.exists())


def _streamlit_flag_options_from_env() -> dict[str, object]:
    """Derive Streamlit bootstrap flag options from environment variables."""

    flag_options: dict[str, object] = {}

    port_env = os.getenv("PORT")
    if port_env:
        try:
            port = int(port_env)
        except (TypeError, ValueError):
            port = None
        if port and port > 0:
            flag_options["server.port"] = port

    address_env = os.getenv("HOST") or os.getenv("BIND_ADDRESS")
    flag_options["server.address"] = address_env or "0.0.0.0"

    headless_env = os.getenv("STREAMLIT_SERVER_HEADLESS")
    if headless_env is None:
        flag_options["server.headless"] = True
    else:
        flag_options["server.headless"] = headless_env.strip().lower() in (
            "1",
            "true",
            "yes",
            "on",
        )

    return flag_options


def _bootstrap_streamlit_app() -> None:
    """Launch the Streamlit app when executed via ``python app.py``."""

    from streamlit.web import bootstrap

    bootstrap.run(
        os.path.abspath(__file__),
        False,
        [],
        _streamlit_flag_options_from_env(),
    )


if __name__ == "__main__":
    if _streamlit_runtime_active():
        main()
    else:
        _bootstrap_streamlit_app()
