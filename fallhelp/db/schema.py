DDL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS elders (
  id          TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
  first_name  TEXT NOT NULL,
  last_name   TEXT NOT NULL DEFAULT '',
  created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS users (
  id          TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
  first_name  TEXT NOT NULL DEFAULT '',
  last_name   TEXT NOT NULL DEFAULT '',
  push_token  TEXT NULL,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_elder_access (
  user_id       TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  elder_id      TEXT NOT NULL REFERENCES elders(id) ON DELETE CASCADE,
  access_level  TEXT NOT NULL DEFAULT 'VIEWER',
  created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (user_id, elder_id)
);

CREATE TABLE IF NOT EXISTS devices (
  id                TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
  serial_number     TEXT NOT NULL UNIQUE,
  device_code       TEXT NOT NULL UNIQUE,
  elder_id          TEXT NULL REFERENCES elders(id) ON DELETE SET NULL,
  status            TEXT NOT NULL DEFAULT 'UNPAIRED',
  last_online       TIMESTAMPTZ NULL,
  firmware_version  TEXT NULL,
  updated_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS device_configs (
  device_id          TEXT PRIMARY KEY REFERENCES devices(id) ON DELETE CASCADE,
  fall_threshold     DOUBLE PRECISION NOT NULL DEFAULT 2.5,
  hr_low_threshold   INTEGER NOT NULL DEFAULT 50,
  hr_high_threshold  INTEGER NOT NULL DEFAULT 120,
  sample_interval    INTEGER NOT NULL DEFAULT 1000,
  wifi_status        TEXT NOT NULL DEFAULT 'CONFIGURING',
  ip_address         TEXT NULL,
  updated_at         TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS events (
  id               TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
  elder_id         TEXT NOT NULL REFERENCES elders(id),
  device_id        TEXT NOT NULL REFERENCES devices(id),
  type             TEXT NOT NULL,
  severity         TEXT NOT NULL,
  timestamp        TIMESTAMPTZ NOT NULL,
  value            DOUBLE PRECISION NULL,
  accelerometer_x  DOUBLE PRECISION NULL,
  accelerometer_y  DOUBLE PRECISION NULL,
  accelerometer_z  DOUBLE PRECISION NULL,
  metadata         JSONB NOT NULL DEFAULT '{}'::jsonb,
  is_cancelled     BOOLEAN NOT NULL DEFAULT false,
  dedup_key        TEXT NOT NULL UNIQUE,
  created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_events_elder_ts ON events (elder_id, timestamp DESC);

CREATE TABLE IF NOT EXISTS notifications (
  id          TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
  user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  event_id    TEXT NULL REFERENCES events(id),
  type        TEXT NOT NULL,
  title       TEXT NOT NULL,
  message     TEXT NOT NULL,
  is_read     BOOLEAN NOT NULL DEFAULT false,
  is_sent     BOOLEAN NOT NULL DEFAULT false,
  sent_at     TIMESTAMPTZ NULL,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_notifications_user_event
  ON notifications (user_id, event_id) WHERE event_id IS NOT NULL;
"""


def ddl_statements() -> list[str]:
    return [s.strip() + ";" for s in DDL.strip().split(";") if s.strip()]
