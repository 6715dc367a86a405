"""SQL batches for the contended-write workload.

``kv`` holds the single shared counter row; ``log`` gets one row per committed
increment, partitioned by peer id.
"""

COUNTER_KEY = "counter"

RESET_SQL = """
CREATE TABLE IF NOT EXISTS kv (key PRIMARY KEY, value);
REPLACE INTO kv VALUES ('counter', 0);

CREATE TABLE IF NOT EXISTS log (time, peer_id, count);
DELETE FROM log;
"""

# BEGIN IMMEDIATE takes the write lock up front so the update and the log
# insert cannot interleave with another peer's transaction.
INCREMENT_SQL = """
BEGIN IMMEDIATE;

UPDATE kv SET value = value + 1 WHERE key = 'counter';
INSERT INTO log VALUES
  (:time, :peer_id, (SELECT value FROM kv WHERE key = 'counter'));

COMMIT;
"""

RECONCILE_SQL = """
DELETE FROM log WHERE time > :end_time;

SELECT peer_id, COUNT(*) AS transactions FROM log GROUP BY peer_id ORDER BY peer_id;
"""

COUNTER_SQL = "SELECT value FROM kv WHERE key = 'counter';"
