"""Dashboard HTML: wave plan, blocked tasks and ledger summary."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Wave Orchestrator</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --todo: #8b949e; --in-progress: #58a6ff; --in-review: #d2a8ff;
    --done: #3fb950; --blocked: #f85149; --cancelled: #6e7681;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }
  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                  padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }

  .summary { display: flex; gap: 16px; align-items: center; margin-bottom: 24px; flex-wrap: wrap; }
  .stat { font-size: 14px; }
  .progress-bar { flex: 1; min-width: 120px; height: 8px; background: var(--surface);
                  border-radius: 4px; overflow: hidden; border: 1px solid var(--border); }
  .progress-bar .fill { height: 100%; background: var(--done); }

  h2 { font-size: 15px; margin: 20px 0 8px; color: var(--text-muted); }
  .task-card { background: var(--surface); border: 1px solid var(--border);
               border-radius: 8px; padding: 10px 16px; margin-bottom: 2px;
               display: flex; align-items: center; gap: 10px; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; }
  .badge.todo { color: var(--todo); }
  .badge.in-progress { color: var(--in-progress); }
  .badge.in-review { color: var(--in-review); }
  .badge.done { color: var(--done); }
  .badge.blocked { color: var(--blocked); }
  .badge.cancelled { color: var(--cancelled); }
  .task-title { font-weight: 600; font-size: 14px; }
  .task-id, .meta { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .notes { font-size: 13px; color: var(--text-muted); white-space: pre-wrap; margin: 0 0 8px 16px; }
  .error { color: var(--blocked); padding: 12px 0; }
  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Wave Orchestrator</h1>
    <button onclick="loadDashboard()">Refresh</button>
  </header>
  <div id="content"><div class="empty">Loading...</div></div>
</div>

<script>
async function fetchJSON(path) {
  const res = await fetch(path);
  return { ok: res.ok, body: await res.json() };
}

async function loadDashboard() {
  const content = document.getElementById('content');
  const [summary, plan, blocked] = await Promise.all([
    fetchJSON('/api/summary'),
    fetchJSON('/api/plan'),
    fetchJSON('/api/blocked'),
  ]);

  let html = '';
  const s = summary.body;
  html += `<div class="summary">
    ${Object.entries(s.counts).map(([k, v]) => `<span class="stat">${v} ${esc(k)}</span>`).join('')}
    <div class="progress-bar"><div class="fill" style="width:${s.progress_pct}%"></div></div>
    <span class="meta">${s.progress_pct}% &middot; cycle ${s.wave_cycle}</span>
  </div>`;

  if (!plan.ok) {
    html += `<div class="error">${esc(plan.body.error)}</div>`;
  } else if (plan.body.waves.length === 0 && plan.body.stranded.length === 0) {
    html += '<div class="empty">Nothing left to schedule. Add tasks with <code>wv task add</code></div>';
  } else {
    plan.body.waves.forEach((wave, i) => {
      html += `<h2>Wave ${i}</h2>` + wave.map(renderTask).join('');
    });
    if (plan.body.stranded.length > 0) {
      html += '<h2>Stranded</h2>' + plan.body.stranded.map(renderTask).join('');
    }
  }

  if (blocked.body.length > 0) {
    html += '<h2>Blocked</h2>';
    for (const task of blocked.body) {
      html += renderTask(task);
      html += `<div class="notes">${esc(task.notes)}${task.escalated ? '\\n(escalated)' : ''}</div>`;
    }
  }

  content.innerHTML = html;
}

function renderTask(task) {
  const deps = task.dependencies.length ? `after ${task.dependencies.join(', ')}` : '';
  return `<div class="task-card">
    <span class="badge ${task.status}">${esc(task.status)}</span>
    <span class="task-title">${esc(task.title)}</span>
    <span class="task-id">#${task.id}</span>
    <span class="meta">${esc(task.owner || '')} ${deps}</span>
  </div>`;
}

function esc(s) {
  if (!s) return '';
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

loadDashboard();
setInterval(loadDashboard, 30000);
</script>
</body>
</html>"""
