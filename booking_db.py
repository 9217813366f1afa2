from __future__ import annotations

# =============================
# PostgreSQL access for the booking backend
# =============================

import os
import traceback
from datetime import datetime, date
from decimal import Decimal

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor, Json

DATABASE_URL = os.environ.get("DATABASE_URL")
if DATABASE_URL and DATABASE_URL.startswith('postgres://'):
    DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

connection_pool = None
if DATABASE_URL:
    try:
        connection_pool = pool.ThreadedConnectionPool(
            minconn=2,
            maxconn=15,
            dsn=DATABASE_URL
        )
        print("✅ Database connection pool initialized")
    except Exception as e:
        print(f"❌ Connection pool failed: {e}")
        connection_pool = None
else:
    print("⚠️  DATABASE_URL not set - database features disabled")


def get_db_connection():
    """Get connection from pool"""
    if connection_pool:
        try:
            return connection_pool.getconn()
        except Exception as e:
            print(f"Connection pool exhausted: {e}")

    if not DATABASE_URL:
        return None

    try:
        return psycopg2.connect(DATABASE_URL)
    except Exception as e:
        print(f"Database connection error: {e}")
        return None


def return_db_connection(conn):
    """Return connection to pool"""
    if conn and connection_pool:
        try:
            connection_pool.putconn(conn)
        except Exception:
            conn.close()
    elif conn:
        conn.close()


def execute_query(query, params=None, fetch=True):
    """Execute a query; returns rows, rowcount for writes, or None on failure"""
    conn = None
    cursor = None
    try:
        conn = get_db_connection()
        if not conn:
            return None

        cursor = conn.cursor(cursor_factory=RealDictCursor)
        cursor.execute(query, params)

        if fetch:
            result = [dict(row) for row in cursor.fetchall()]
            if not query.strip().upper().startswith('SELECT'):
                conn.commit()
        else:
            conn.commit()
            result = cursor.rowcount

        return result
    except Exception as e:
        log_error(f"Query execution error: {e}")
        if conn:
            conn.rollback()
        return None
    finally:
        if cursor:
            cursor.close()
        if conn:
            return_db_connection(conn)


def execute_query_one(query, params=None):
    """Execute a query and return the first row as a dict (or None)"""
    rows = execute_query(query, params)
    if not rows:
        return None
    return rows[0]


def run_in_transaction(work):
    """Run `work(cursor)` inside one transaction and return its result"""
    conn = get_db_connection()
    if not conn:
        raise RuntimeError("Database connection failed")

    cursor = conn.cursor(cursor_factory=RealDictCursor)
    try:
        result = work(cursor)
        conn.commit()
        return result
    except Exception:
        conn.rollback()
        raise
    finally:
        cursor.close()
        return_db_connection(conn)


def serialize_row(row):
    """Make a database row JSON friendly"""
    if row is None:
        return None
    clean = {}
    for key, value in dict(row).items():
        if isinstance(value, (datetime, date)):
            clean[key] = value.isoformat()
        elif isinstance(value, Decimal):
            clean[key] = float(value)
        elif isinstance(value, dict):
            clean[key] = serialize_row(value)
        elif isinstance(value, list):
            clean[key] = [serialize_row(v) if isinstance(v, dict) else v for v in value]
        else:
            clean[key] = value
    return clean


# =============================
# Activity log
# =============================

def log_activity(message: str, activity_type: str = "info") -> None:
    """Add activity to database and echo it to the console"""
    print(f"[{activity_type.upper()}] {message}")

    conn = get_db_connection()
    if not conn:
        return
    try:
        cursor = conn.cursor()
        cursor.execute(
            "INSERT INTO activity_log (message, type) VALUES (%s, %s)",
            (message, activity_type)
        )
        conn.commit()
        cursor.close()
    except Exception as e:
        conn.rollback()
        print(f"Error logging activity: {e}")
    finally:
        return_db_connection(conn)


def log_error(error: Exception | str, error_type: str = "error") -> None:
    err = str(error)
    log_activity(f"Error: {err}", error_type)
    print(f"Traceback: {traceback.format_exc()}")


def get_activity_log(limit=20):
    rows = execute_query(
        "SELECT message, type, timestamp FROM activity_log ORDER BY timestamp DESC LIMIT %s",
        (limit,)
    )
    return [serialize_row(r) for r in rows or []]


# =============================
# Schema
# =============================

def init_database():
    """Create tables if they are missing, then apply pending migrations"""
    conn = get_db_connection()
    if not conn:
        print("❌ Could not connect to database")
        return False

    try:
        cursor = conn.cursor()
        cursor.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS profiles (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                email VARCHAR(255) UNIQUE NOT NULL,
                full_name VARCHAR(255),
                role VARCHAR(20) DEFAULT 'user',
                membership_type VARCHAR(20) DEFAULT 'non_member',
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                title VARCHAR(255) NOT NULL,
                description TEXT,
                alias VARCHAR(100) UNIQUE,
                location VARCHAR(255),
                start_date TIMESTAMPTZ NOT NULL,
                end_date TIMESTAMPTZ,
                status VARCHAR(20) DEFAULT 'draft',
                organizer_id UUID REFERENCES profiles(id),
                timeline JSONB DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS event_sections (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                event_id UUID REFERENCES events(id) ON DELETE CASCADE,
                title VARCHAR(255) NOT NULL,
                description TEXT,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS event_pricing (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                event_id UUID REFERENCES events(id) ON DELETE CASCADE,
                section_id UUID REFERENCES event_sections(id) ON DELETE CASCADE,
                name VARCHAR(255) NOT NULL,
                pricing_type VARCHAR(20) DEFAULT 'regular',
                membership_type VARCHAR(20) DEFAULT 'all',
                price DECIMAL(10,2) DEFAULT 0,
                start_date TIMESTAMPTZ,
                end_date TIMESTAMPTZ,
                is_active BOOLEAN DEFAULT TRUE,
                max_tickets INTEGER,
                tickets_sold INTEGER DEFAULT 0
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS bookings (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                booking_id VARCHAR(20) UNIQUE,
                event_id UUID REFERENCES events(id) ON DELETE CASCADE,
                user_id UUID REFERENCES profiles(id),
                pricing_id UUID REFERENCES event_pricing(id),
                quantity INTEGER DEFAULT 1,
                total_amount DECIMAL(10,2) DEFAULT 0,
                status VARCHAR(20) DEFAULT 'pending',
                refund_status VARCHAR(20) DEFAULT 'none',
                refund_amount DECIMAL(10,2),
                refund_percentage DECIMAL(6,2),
                refund_reason TEXT,
                refund_requested_at TIMESTAMPTZ,
                refund_processed_at TIMESTAMPTZ,
                booking_date TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS participants (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                booking_id UUID REFERENCES bookings(id) ON DELETE CASCADE,
                section_id UUID REFERENCES event_sections(id),
                first_name VARCHAR(100) NOT NULL,
                middle_name VARCHAR(100),
                last_name VARCHAR(100) NOT NULL,
                email VARCHAR(255),
                date_of_birth DATE,
                contact_email VARCHAR(255),
                contact_phone VARCHAR(50),
                price_paid DECIMAL(10,2) DEFAULT 0,
                status VARCHAR(20) DEFAULT 'active',
                custom_data JSONB DEFAULT '{}'::jsonb,
                refund_amount DECIMAL(10,2),
                refund_percentage DECIMAL(6,2),
                withdrawal_reason TEXT,
                withdrawn_at TIMESTAMPTZ,
                withdrawn_by UUID REFERENCES profiles(id),
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS event_discounts (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                event_id UUID REFERENCES events(id) ON DELETE CASCADE,
                name VARCHAR(255) NOT NULL,
                description TEXT,
                code VARCHAR(50),
                discount_type VARCHAR(30) NOT NULL,
                value_type VARCHAR(20) NOT NULL,
                value DECIMAL(10,2) DEFAULT 0,
                start_date TIMESTAMPTZ,
                end_date TIMESTAMPTZ,
                is_active BOOLEAN DEFAULT TRUE,
                max_uses INTEGER DEFAULT 0,
                current_uses INTEGER DEFAULT 0,
                min_quantity INTEGER DEFAULT 1,
                max_quantity INTEGER DEFAULT 0,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS participant_discount_rules (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                discount_id UUID REFERENCES event_discounts(id) ON DELETE CASCADE,
                rule_type VARCHAR(30) NOT NULL,
                related_event_id UUID REFERENCES events(id) ON DELETE SET NULL,
                field_name VARCHAR(255),
                operator VARCHAR(20),
                field_value VARCHAR(255)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS seat_discount_rules (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                discount_id UUID REFERENCES event_discounts(id) ON DELETE CASCADE,
                min_seats INTEGER NOT NULL,
                max_seats INTEGER,
                discount_amount DECIMAL(10,2) DEFAULT 0,
                discount_percentage DECIMAL(6,2)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS discount_applications (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                booking_id UUID REFERENCES bookings(id) ON DELETE CASCADE,
                discount_id UUID REFERENCES event_discounts(id) ON DELETE SET NULL,
                applied_value DECIMAL(10,2) DEFAULT 0,
                original_amount DECIMAL(10,2) DEFAULT 0,
                final_amount DECIMAL(10,2) DEFAULT 0,
                applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS scheduled_emails (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                organizer_id UUID REFERENCES profiles(id),
                recipients JSONB NOT NULL,
                subject TEXT NOT NULL,
                message TEXT NOT NULL,
                context JSONB DEFAULT '{}'::jsonb,
                attachments JSONB DEFAULT '[]'::jsonb,
                scheduled_date TIMESTAMPTZ NOT NULL,
                status VARCHAR(20) DEFAULT 'scheduled',
                error_message TEXT,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                sent_at TIMESTAMPTZ
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS email_logs (
                id SERIAL PRIMARY KEY,
                organizer_id UUID REFERENCES profiles(id),
                recipients JSONB NOT NULL,
                subject TEXT,
                message TEXT,
                context JSONB DEFAULT '{}'::jsonb,
                attachments JSONB DEFAULT '[]'::jsonb,
                sent_count INTEGER DEFAULT 0,
                failed_count INTEGER DEFAULT 0,
                status VARCHAR(20),
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS activity_log (
                id SERIAL PRIMARY KEY,
                message TEXT NOT NULL,
                type VARCHAR(50) DEFAULT 'info',
                timestamp TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                description TEXT
            )
        ''')

        conn.commit()
        cursor.close()
        print("✅ Database initialization completed")
    except Exception as e:
        conn.rollback()
        print(f"❌ Database initialization error: {e}")
        return False
    finally:
        return_db_connection(conn)

    return run_database_migrations()


MIGRATIONS = [
    {
        'version': 1,
        'description': 'Indexes for dashboard and organizer lookups',
        'sql': [
            'CREATE INDEX IF NOT EXISTS idx_bookings_user_id ON bookings(user_id);',
            'CREATE INDEX IF NOT EXISTS idx_bookings_event_id ON bookings(event_id);',
            'CREATE INDEX IF NOT EXISTS idx_participants_booking_id ON participants(booking_id);',
            'CREATE INDEX IF NOT EXISTS idx_event_discounts_event_id ON event_discounts(event_id);',
        ]
    },
    {
        'version': 2,
        'description': 'Index scheduled emails by due date',
        'sql': [
            'CREATE INDEX IF NOT EXISTS idx_scheduled_emails_due ON scheduled_emails(status, scheduled_date);',
        ]
    },
    {
        'version': 3,
        'description': 'Participant price and withdrawal columns',
        'sql': [
            'ALTER TABLE participants ADD COLUMN IF NOT EXISTS price_paid DECIMAL(10,2) DEFAULT 0;',
            'ALTER TABLE participants ADD COLUMN IF NOT EXISTS refund_amount DECIMAL(10,2);',
            'ALTER TABLE participants ADD COLUMN IF NOT EXISTS refund_percentage DECIMAL(6,2);',
            'ALTER TABLE participants ADD COLUMN IF NOT EXISTS withdrawal_reason TEXT;',
            'ALTER TABLE participants ADD COLUMN IF NOT EXISTS withdrawn_at TIMESTAMPTZ;',
            'ALTER TABLE participants ADD COLUMN IF NOT EXISTS withdrawn_by UUID REFERENCES profiles(id);',
        ]
    },
]


def get_current_schema_version():
    row = execute_query_one("SELECT COALESCE(MAX(version), 0) AS version FROM schema_version")
    return row['version'] if row else 0


def apply_migration(version, description, sql_commands):
    """Apply a database migration"""
    def _apply(cursor):
        print(f"🔄 Applying migration {version}: {description}")
        for sql in sql_commands:
            cursor.execute(sql)
        cursor.execute(
            "INSERT INTO schema_version (version, description) VALUES (%s, %s)",
            (version, description)
        )

    try:
        run_in_transaction(_apply)
        print(f"✅ Migration {version} applied successfully")
        return True
    except Exception as e:
        print(f"❌ Migration {version} failed: {e}")
        return False


def run_database_migrations():
    """Run all pending database migrations"""
    current_version = get_current_schema_version()
    print(f"📊 Current database schema version: {current_version}")

    for migration in MIGRATIONS:
        if migration['version'] > current_version:
            if not apply_migration(migration['version'], migration['description'], migration['sql']):
                return False

    print("✅ All database migrations completed successfully")
    return True


# =============================
# Profiles
# =============================

def get_profile(profile_id):
    return execute_query_one(
        "SELECT id, email, full_name, role, membership_type FROM profiles WHERE id = %s",
        (profile_id,)
    )


def get_profile_by_email(email):
    return execute_query_one("SELECT * FROM profiles WHERE LOWER(email) = LOWER(%s)", (email,))


# =============================
# Events, sections, participants
# =============================

def get_event(event_id):
    return execute_query_one("SELECT * FROM events WHERE id = %s", (event_id,))


def get_event_by_alias(alias):
    return execute_query_one("SELECT * FROM events WHERE alias = %s", (alias,))


def get_section(section_id, event_id):
    return execute_query_one(
        "SELECT id, title, description FROM event_sections WHERE id = %s AND event_id = %s",
        (section_id, event_id)
    )


def get_participant_in_event(participant_id, event_id):
    """Participant joined with its section and the booker's profile"""
    return execute_query_one("""
        SELECT p.*,
               s.title AS section_title,
               b.user_id,
               b.booking_id AS booking_reference,
               u.email AS booker_email,
               u.full_name AS booker_name
        FROM participants p
        JOIN bookings b ON b.id = p.booking_id
        LEFT JOIN event_sections s ON s.id = p.section_id
        LEFT JOIN profiles u ON u.id = b.user_id
        WHERE p.id = %s AND b.event_id = %s
    """, (participant_id, event_id))


def set_participant_sections(assignments):
    """Move participants between sections in a single transaction"""
    def _move(cursor):
        for participant_id, section_id in assignments:
            cursor.execute(
                "UPDATE participants SET section_id = %s, updated_at = NOW() WHERE id = %s",
                (section_id, participant_id)
            )
        return len(assignments)

    return run_in_transaction(_move)


def get_booking_participant(participant_id, booking_id):
    return execute_query_one(
        "SELECT * FROM participants WHERE id = %s AND booking_id = %s",
        (participant_id, booking_id)
    )


def get_active_participant_names(booking_id):
    return execute_query("""
        SELECT first_name, last_name FROM participants
        WHERE booking_id = %s AND status <> 'cancelled'
        ORDER BY created_at
    """, (booking_id,))


def withdraw_participant(participant_id, reason, refund_amount, refund_percentage, performed_by):
    """Cancel one participant and the whole booking once nobody is left on it.

    Returns {'booking_cancelled', 'remaining_participants'}, or None when the
    participant was already cancelled.
    """
    def _withdraw(cursor):
        cursor.execute("""
            UPDATE participants
            SET status = 'cancelled',
                refund_amount = %s,
                refund_percentage = %s,
                withdrawal_reason = %s,
                withdrawn_at = NOW(),
                withdrawn_by = %s,
                updated_at = NOW()
            WHERE id = %s AND status <> 'cancelled'
            RETURNING booking_id
        """, (refund_amount, refund_percentage, reason, performed_by, participant_id))
        row = cursor.fetchone()
        if not row:
            return None

        cursor.execute(
            "SELECT COUNT(*) AS count FROM participants WHERE booking_id = %s AND status <> 'cancelled'",
            (row['booking_id'],)
        )
        remaining = cursor.fetchone()['count']

        if remaining == 0:
            cursor.execute(
                "UPDATE bookings SET status = 'cancelled', updated_at = NOW() WHERE id = %s",
                (row['booking_id'],)
            )
        return {'booking_cancelled': remaining == 0, 'remaining_participants': remaining}

    return run_in_transaction(_withdraw)


def get_previous_bookings(event_id):
    """Bookings of an event with their participants, used by previous-event discount rules"""
    rows = execute_query("""
        SELECT b.id, b.status,
               COALESCE(
                   json_agg(json_build_object(
                       'first_name', p.first_name,
                       'last_name', p.last_name,
                       'email', COALESCE(p.email, p.contact_email),
                       'date_of_birth', p.date_of_birth
                   )) FILTER (WHERE p.id IS NOT NULL),
                   '[]'::json
               ) AS participants
        FROM bookings b
        LEFT JOIN participants p ON p.booking_id = b.id
        WHERE b.event_id = %s
        GROUP BY b.id
    """, (event_id,))
    return rows or []


# =============================
# Bookings
# =============================

BOOKING_WITH_EVENT = """
    SELECT b.*,
           json_build_object(
               'id', e.id,
               'title', e.title,
               'start_date', e.start_date,
               'location', e.location,
               'organizer_id', e.organizer_id,
               'timeline', e.timeline
           ) AS event
    FROM bookings b
    JOIN events e ON e.id = b.event_id
"""


def get_booking_with_event(booking_id, user_id=None):
    query = BOOKING_WITH_EVENT + " WHERE b.id = %s"
    params = [booking_id]
    if user_id is not None:
        query += " AND b.user_id = %s"
        params.append(user_id)
    return execute_query_one(query, params)


def get_booking_by_reference(reference):
    return execute_query_one(BOOKING_WITH_EVENT + " WHERE b.booking_id = %s", (reference,))


def list_user_bookings(user_id):
    return execute_query(BOOKING_WITH_EVENT + " WHERE b.user_id = %s ORDER BY b.booking_date DESC", (user_id,))


def list_event_bookings(event_id, search=None, status=None, limit=25, offset=0):
    """Organizer view of an event's bookings; returns (rows, total) or (None, 0)"""
    where = ["b.event_id = %s"]
    params = [event_id]

    if status and status != 'all':
        where.append("b.status = %s")
        params.append(status)

    if search:
        like = f"%{search}%"
        where.append("""(
            b.booking_id ILIKE %s OR u.email ILIKE %s OR u.full_name ILIKE %s
            OR EXISTS (
                SELECT 1 FROM participants p
                WHERE p.booking_id = b.id
                  AND (p.first_name || ' ' || p.last_name) ILIKE %s
            )
        )""")
        params.extend([like, like, like, like])

    clause = " AND ".join(where)
    total = execute_query_one(f"""
        SELECT COUNT(*) AS count
        FROM bookings b LEFT JOIN profiles u ON u.id = b.user_id
        WHERE {clause}
    """, params)
    if total is None:
        return None, 0

    rows = execute_query(f"""
        SELECT b.*, u.email AS user_email, u.full_name AS user_name,
               (SELECT COUNT(*) FROM participants p WHERE p.booking_id = b.id) AS participant_count
        FROM bookings b LEFT JOIN profiles u ON u.id = b.user_id
        WHERE {clause}
        ORDER BY b.booking_date DESC
        LIMIT %s OFFSET %s
    """, params + [limit, offset])
    return rows, total['count']


def mark_refund_requested(booking_id, amount, percentage, reason):
    return execute_query_one("""
        UPDATE bookings
        SET refund_status = 'requested',
            refund_amount = %s,
            refund_percentage = %s,
            refund_reason = %s,
            refund_requested_at = NOW(),
            updated_at = NOW()
        WHERE id = %s AND refund_status = 'none'
        RETURNING id, refund_status, refund_amount, refund_percentage
    """, (amount, percentage, reason, booking_id))


def update_refund_status(booking_id, refund_status):
    if refund_status == 'completed':
        query = """
            UPDATE bookings
            SET refund_status = 'completed', status = 'cancelled',
                refund_processed_at = NOW(), updated_at = NOW()
            WHERE id = %s
            RETURNING id, status, refund_status
        """
        params = (booking_id,)
    else:
        query = """
            UPDATE bookings SET refund_status = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING id, status, refund_status
        """
        params = (refund_status, booking_id)
    return execute_query_one(query, params)


def discount_savings(user_id, year):
    return execute_query("""
        SELECT da.applied_value, da.original_amount, da.final_amount, da.applied_at,
               b.status AS booking_status
        FROM discount_applications da
        JOIN bookings b ON b.id = da.booking_id
        WHERE b.user_id = %s
          AND EXTRACT(YEAR FROM da.applied_at) = %s
          AND b.status IN ('confirmed', 'verified', 'pending')
        ORDER BY da.applied_at DESC
    """, (user_id, year))


# =============================
# Discounts
# =============================

DISCOUNT_WITH_RULES = """
    SELECT d.*,
           COALESCE((SELECT json_agg(r) FROM participant_discount_rules r WHERE r.discount_id = d.id), '[]'::json) AS rules,
           COALESCE((SELECT json_agg(s ORDER BY s.min_seats) FROM seat_discount_rules s WHERE s.discount_id = d.id), '[]'::json) AS seat_rules
    FROM event_discounts d
"""

DISCOUNT_COLUMNS = (
    'name', 'description', 'code', 'discount_type', 'value_type', 'value',
    'start_date', 'end_date', 'is_active', 'max_uses', 'min_quantity', 'max_quantity'
)
RULE_COLUMNS = ('rule_type', 'related_event_id', 'field_name', 'operator', 'field_value')
SEAT_RULE_COLUMNS = ('min_seats', 'max_seats', 'discount_amount', 'discount_percentage')


def get_active_discounts(event_id):
    return execute_query(DISCOUNT_WITH_RULES + " WHERE d.event_id = %s AND d.is_active = TRUE", (event_id,))


def list_discounts(event_id):
    return execute_query(DISCOUNT_WITH_RULES + " WHERE d.event_id = %s ORDER BY d.created_at", (event_id,))


def get_discount(discount_id):
    return execute_query_one(DISCOUNT_WITH_RULES + " WHERE d.id = %s", (discount_id,))


def get_code_discount(event_id, code):
    return execute_query_one("""
        SELECT * FROM event_discounts
        WHERE event_id = %s AND UPPER(code) = %s
          AND discount_type = 'code' AND is_active = TRUE
    """, (event_id, code.strip().upper()))


def _insert_rules(cursor, discount_id, rules, seat_rules):
    for rule in rules:
        cursor.execute(
            f"INSERT INTO participant_discount_rules (discount_id, {', '.join(RULE_COLUMNS)}) "
            "VALUES (%s, %s, %s, %s, %s, %s)",
            [discount_id] + [rule.get(c) for c in RULE_COLUMNS]
        )
    for rule in seat_rules:
        cursor.execute(
            f"INSERT INTO seat_discount_rules (discount_id, {', '.join(SEAT_RULE_COLUMNS)}) "
            "VALUES (%s, %s, %s, %s, %s)",
            [discount_id] + [rule.get(c) for c in SEAT_RULE_COLUMNS]
        )


def create_discount(event_id, data, rules, seat_rules):
    def _create(cursor):
        cursor.execute(
            f"INSERT INTO event_discounts (event_id, {', '.join(DISCOUNT_COLUMNS)}) "
            f"VALUES (%s, {', '.join(['%s'] * len(DISCOUNT_COLUMNS))}) RETURNING id",
            [event_id] + [data.get(c) for c in DISCOUNT_COLUMNS]
        )
        discount_id = cursor.fetchone()['id']
        _insert_rules(cursor, discount_id, rules, seat_rules)
        return discount_id

    return run_in_transaction(_create)


def update_discount(discount_id, data, rules, seat_rules):
    """Overwrite a discount; rule lists that are provided replace the stored ones"""
    def _update(cursor):
        assignments = ', '.join(f"{c} = %s" for c in DISCOUNT_COLUMNS)
        cursor.execute(
            f"UPDATE event_discounts SET {assignments} WHERE id = %s",
            [data.get(c) for c in DISCOUNT_COLUMNS] + [discount_id]
        )
        if rules is not None:
            cursor.execute("DELETE FROM participant_discount_rules WHERE discount_id = %s", (discount_id,))
        if seat_rules is not None:
            cursor.execute("DELETE FROM seat_discount_rules WHERE discount_id = %s", (discount_id,))
        _insert_rules(cursor, discount_id, rules or [], seat_rules or [])
        return cursor.rowcount

    return run_in_transaction(_update)


def delete_discount(discount_id):
    return execute_query("DELETE FROM event_discounts WHERE id = %s", (discount_id,), fetch=False)


# =============================
# Email
# =============================

def get_booking_recipient_rows(booking_id):
    """Booker plus participants of a booking"""
    return execute_query("""
        SELECT b.id AS booking_uuid, b.booking_id, u.email AS user_email, u.full_name AS user_name,
               p.id AS participant_id, p.first_name, p.middle_name, p.last_name, p.contact_email
        FROM bookings b
        LEFT JOIN profiles u ON u.id = b.user_id
        LEFT JOIN participants p ON p.booking_id = b.id
        WHERE b.id = %s
        ORDER BY p.created_at
    """, (booking_id,))


def get_event_recipient_rows(event_id):
    """Bookers and active participants of every live booking of an event"""
    return execute_query("""
        SELECT b.id AS booking_uuid, b.booking_id, u.email AS user_email, u.full_name AS user_name,
               p.id AS participant_id, p.first_name, p.middle_name, p.last_name, p.contact_email
        FROM bookings b
        LEFT JOIN profiles u ON u.id = b.user_id
        LEFT JOIN participants p ON p.booking_id = b.id AND p.status IN ('active', 'whitelisted')
        WHERE b.event_id = %s AND b.status IN ('confirmed', 'pending', 'verified')
        ORDER BY b.booking_date, p.created_at
    """, (event_id,))


def get_participant_with_booking(participant_id):
    return execute_query_one("""
        SELECT p.*,
               json_build_object(
                   'id', b.id,
                   'booking_id', b.booking_id,
                   'total_amount', b.total_amount,
                   'event', json_build_object(
                       'id', e.id, 'title', e.title, 'start_date', e.start_date,
                       'location', e.location, 'organizer_id', e.organizer_id
                   ),
                   'user', json_build_object('email', u.email, 'full_name', u.full_name)
               ) AS booking
        FROM participants p
        JOIN bookings b ON b.id = p.booking_id
        JOIN events e ON e.id = b.event_id
        LEFT JOIN profiles u ON u.id = b.user_id
        WHERE p.id = %s
    """, (participant_id,))


def insert_scheduled_email(organizer_id, recipients, subject, message, context, scheduled_date, attachments):
    return execute_query_one("""
        INSERT INTO scheduled_emails
            (organizer_id, recipients, subject, message, context, scheduled_date, status, attachments)
        VALUES (%s, %s, %s, %s, %s, %s, 'scheduled', %s)
        RETURNING id, scheduled_date
    """, (organizer_id, Json(recipients), subject, message, Json(context or {}),
          scheduled_date, Json(attachments or [])))


def claim_scheduled_email(email_id):
    """Flip a scheduled email to processing; None when another worker got there first"""
    return execute_query_one("""
        UPDATE scheduled_emails
        SET status = 'processing', updated_at = NOW()
        WHERE id = %s AND status = 'scheduled'
        RETURNING *
    """, (email_id,))


def due_scheduled_email_ids(limit=50):
    rows = execute_query("""
        SELECT id FROM scheduled_emails
        WHERE status = 'scheduled' AND scheduled_date <= NOW()
        ORDER BY scheduled_date
        LIMIT %s
    """, (limit,))
    return [r['id'] for r in rows or []]


def finish_scheduled_email(email_id, status, error_message=None):
    return execute_query("""
        UPDATE scheduled_emails
        SET status = %s, error_message = %s, updated_at = NOW(),
            sent_at = CASE WHEN %s = 'sent' THEN NOW() ELSE sent_at END
        WHERE id = %s
    """, (status, error_message, status, email_id), fetch=False)


def insert_email_log(organizer_id, recipients, subject, message, context, sent_count, failed_count, attachments):
    if failed_count == 0:
        status = 'sent'
    elif sent_count == 0:
        status = 'failed'
    else:
        status = 'partial'
    return execute_query("""
        INSERT INTO email_logs
            (organizer_id, recipients, subject, message, context, sent_count, failed_count, status, attachments)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
    """, (organizer_id, Json(recipients), subject, message, Json(context or {}),
          sent_count, failed_count, status, Json(attachments or [])), fetch=False)
